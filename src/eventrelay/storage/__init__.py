"""
Module: storage
Description: Durable blob storage for the persistent queue.

Provides file, in-memory and S3 backends behind one small interface
(write_blob / read_blob / delete_blob) with atomic overwrite semantics.
"""

from eventrelay.storage.blob import BlobStore, FileBlobStore, InMemoryBlobStore, S3BlobStore, create_blob_store

__all__ = ["BlobStore", "FileBlobStore", "InMemoryBlobStore", "S3BlobStore", "create_blob_store"]
