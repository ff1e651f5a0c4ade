"""
Module: test_blob.py
Description: Unit tests for blob stores.

Tests the file store's atomic replace, the in-memory store, and the S3
store against moto's mocked S3, including error mapping.
"""

import os
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from eventrelay.config.settings import DeliverySettings
from eventrelay.errors import ConfigurationError, StorageError
from eventrelay.storage.blob import (
    FileBlobStore,
    InMemoryBlobStore,
    S3BlobStore,
    create_blob_store,
)


class TestInMemoryBlobStore:
    """Test cases for InMemoryBlobStore."""

    def test_write_read_delete(self):
        store = InMemoryBlobStore()

        store.write_blob("queue.json", b"data")

        assert store.read_blob("queue.json") == b"data"
        assert store.delete_blob("queue.json") is True
        assert store.read_blob("queue.json") is None
        assert store.delete_blob("queue.json") is False

    @pytest.mark.parametrize("key", ["", "../escape.json", "with space", "semi;colon"])
    def test_invalid_keys(self, key):
        with pytest.raises(ValueError):
            InMemoryBlobStore().write_blob(key, b"x")


class TestFileBlobStore:
    """Test cases for FileBlobStore."""

    def test_write_creates_directory(self, tmp_path):
        root = tmp_path / "nested" / "state"
        store = FileBlobStore(str(root))

        store.write_blob("queue.json", b'{"version": 1}')

        assert (root / "queue.json").read_bytes() == b'{"version": 1}'

    def test_overwrite_replaces_whole_blob(self, tmp_path):
        store = FileBlobStore(str(tmp_path))
        store.write_blob("queue.json", b"a much longer first version")

        store.write_blob("queue.json", b"short")

        assert store.read_blob("queue.json") == b"short"

    def test_no_temp_files_left_behind(self, tmp_path):
        store = FileBlobStore(str(tmp_path))

        store.write_blob("queue.json", b"one")
        store.write_blob("queue.json", b"two")

        assert os.listdir(tmp_path) == ["queue.json"]

    def test_missing_blob(self, tmp_path):
        store = FileBlobStore(str(tmp_path))

        assert store.read_blob("absent.json") is None
        assert store.delete_blob("absent.json") is False

    def test_write_failure_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FileBlobStore(str(blocker / "state"))

        with pytest.raises(StorageError) as exc_info:
            store.write_blob("queue.json", b"data")

        assert exc_info.value.key == "queue.json"

    def test_empty_root_rejected(self):
        with pytest.raises(ValueError, match="root must be a non-empty string"):
            FileBlobStore("")


class TestS3BlobStore:
    """Test cases for S3BlobStore with mocked S3."""

    def test_write_read_delete(self, s3_bucket):
        store = S3BlobStore(bucket="eventrelay-test-queue", prefix="test/", region_name="us-east-1")

        store.write_blob("queue.json", b"payload")

        obj = s3_bucket.get_object(Bucket="eventrelay-test-queue", Key="test/queue.json")
        assert obj["Body"].read() == b"payload"
        assert store.read_blob("queue.json") == b"payload"
        assert store.delete_blob("queue.json") is True

    def test_missing_object_returns_none(self, s3_bucket):
        store = S3BlobStore(bucket="eventrelay-test-queue", region_name="us-east-1")

        assert store.read_blob("absent.json") is None

    def test_missing_bucket_raises_storage_error(self, s3_bucket):
        store = S3BlobStore(bucket="no-such-bucket", region_name="us-east-1")

        with pytest.raises(StorageError):
            store.write_blob("queue.json", b"payload")

    def test_client_error_mapped(self):
        client = MagicMock()
        client.get_object.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'Access Denied'}},
            'GetObject'
        )
        store = S3BlobStore(bucket="bucket", client=client)

        with pytest.raises(StorageError, match="failed to read blob"):
            store.read_blob("queue.json")

    def test_empty_bucket_rejected(self):
        with pytest.raises(ValueError, match="bucket must be a non-empty string"):
            S3BlobStore(bucket="")


class TestCreateBlobStore:
    """Test cases for backend selection."""

    def test_memory_backend(self, test_settings):
        assert isinstance(create_blob_store(test_settings), InMemoryBlobStore)

    def test_file_backend(self, test_settings, tmp_path):
        settings = test_settings.model_copy(update={'storage_backend': 'file', 'storage_path': str(tmp_path)})

        store = create_blob_store(settings)

        assert isinstance(store, FileBlobStore)
        assert store.root == tmp_path

    def test_s3_backend(self, s3_bucket):
        settings = DeliverySettings(_env_file=None, storage_backend="s3", s3_bucket="eventrelay-test-queue")

        assert isinstance(create_blob_store(settings), S3BlobStore)

    def test_s3_backend_without_bucket(self, test_settings):
        settings = test_settings.model_copy(update={'storage_backend': 's3', 's3_bucket': None})

        with pytest.raises(ConfigurationError, match="s3_bucket is required"):
            create_blob_store(settings)
