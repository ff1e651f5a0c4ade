"""
Module: blob.py
Description: Byte-level durable storage backends.

Every backend offers atomic overwrite: a reader sees either the previous
committed blob or the new one, never a partial write. The file backend
writes a temporary file beside the target, fsyncs it and swaps it in
with os.replace(); S3 PUTs are atomic per object.

Key Components:
- BlobStore: Protocol consumed by PersistentPriorityQueue
- FileBlobStore: Local directory backend
- InMemoryBlobStore: Process-local backend for tests and ephemeral use
- S3BlobStore: boto3 backend
- create_blob_store(): Backend selection from settings

Dependencies: boto3, botocore, os, tempfile
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from eventrelay.config.settings import DeliverySettings
from eventrelay.errors import ConfigurationError, StorageError
from eventrelay.utils.logger import get_logger

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r'^[a-zA-Z0-9._/-]+$')


def _validate_key(key: str) -> str:
    if not key or not isinstance(key, str):
        raise ValueError("key must be a non-empty string")
    if not _KEY_PATTERN.match(key) or '..' in key.split('/'):
        raise ValueError("key must contain only letters, numbers, dots, slashes, hyphens, and underscores")
    return key


class BlobStore(Protocol):
    """Byte-level persistence with atomic overwrite."""

    def write_blob(self, key: str, data: bytes) -> None:
        ...

    def read_blob(self, key: str) -> Optional[bytes]:
        ...

    def delete_blob(self, key: str) -> bool:
        ...


class InMemoryBlobStore:
    """Blob store kept in a dict. Survives only as long as the instance."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def write_blob(self, key: str, data: bytes) -> None:
        self._blobs[_validate_key(key)] = bytes(data)

    def read_blob(self, key: str) -> Optional[bytes]:
        return self._blobs.get(_validate_key(key))

    def delete_blob(self, key: str) -> bool:
        return self._blobs.pop(_validate_key(key), None) is not None


class FileBlobStore:
    """
    Blob store backed by a local directory.

    Attributes:
        root: Directory holding the blobs
    """

    def __init__(self, root: str):
        """
        Initialize file blob store.

        Args:
            root: Directory for blobs (created on first write)

        Raises:
            ValueError: If root is empty
        """
        if not root or not isinstance(root, (str, os.PathLike)):
            raise ValueError("root must be a non-empty string")

        self.root = Path(root)

        logger.info("File blob store initialized", root=str(self.root))

    def _path(self, key: str) -> Path:
        return self.root / _validate_key(key)

    def write_blob(self, key: str, data: bytes) -> None:
        """
        Atomically replace the blob stored under key.

        Raises:
            StorageError: If the blob could not be written
        """
        path = self._path(key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            with os.fdopen(fd, 'wb') as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
            tmp_name = None

            logger.debug("Blob written", key=key, size=len(data), path=str(path))

        except OSError as e:
            logger.error("Failed to write blob", key=key, path=str(path), error=str(e))
            raise StorageError(f"failed to write blob {key}: {e}", key=key) from e

        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def read_blob(self, key: str) -> Optional[bytes]:
        """
        Read the blob stored under key.

        Returns:
            Blob bytes, or None if absent

        Raises:
            StorageError: If the blob exists but could not be read
        """
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("Failed to read blob", key=key, path=str(path), error=str(e))
            raise StorageError(f"failed to read blob {key}: {e}", key=key) from e

    def delete_blob(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"failed to delete blob {key}: {e}", key=key) from e


class S3BlobStore:
    """
    Blob store backed by an S3 bucket.

    Attributes:
        bucket: Bucket name
        prefix: Key prefix applied to every blob
        s3: boto3 S3 client

    Example:
        >>> store = S3BlobStore(bucket="eventrelay-queue", prefix="prod/")
        >>> store.write_blob("delivery-queue.json", b"{}")
    """

    def __init__(self, bucket: str, prefix: str = "", region_name: Optional[str] = None, client=None):
        """
        Initialize S3 blob store.

        Args:
            bucket: Bucket name
            prefix: Key prefix
            region_name: AWS region (default resolution when omitted)
            client: Optional preconfigured boto3 S3 client

        Raises:
            ValueError: If bucket is empty
        """
        if not bucket or not isinstance(bucket, str):
            raise ValueError("bucket must be a non-empty string")

        self.bucket = bucket
        self.prefix = prefix
        self.s3 = client or boto3.client('s3', region_name=region_name)

        logger.info("S3 blob store initialized", bucket=bucket, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{_validate_key(key)}"

    def write_blob(self, key: str, data: bytes) -> None:
        """
        Store data under key (single PUT, atomic per object).

        Raises:
            StorageError: If the S3 operation fails
        """
        try:
            self.s3.put_object(Bucket=self.bucket, Key=self._key(key), Body=data)

            logger.debug("Blob written to S3", bucket=self.bucket, key=key, size=len(data))

        except ClientError as e:
            logger.error(
                "Failed to write blob to S3",
                bucket=self.bucket,
                key=key,
                error_code=e.response['Error']['Code'],
                error_message=e.response['Error']['Message']
            )
            raise StorageError(f"failed to write blob {key}: {e}", key=key) from e

        except BotoCoreError as e:
            logger.error("Unexpected error writing blob to S3", bucket=self.bucket, key=key, error=str(e))
            raise StorageError(f"failed to write blob {key}: {e}", key=key) from e

    def read_blob(self, key: str) -> Optional[bytes]:
        """
        Read the blob stored under key.

        Returns:
            Blob bytes, or None if the object does not exist

        Raises:
            StorageError: If the S3 operation fails
        """
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=self._key(key))
            return response['Body'].read()

        except ClientError as e:
            if e.response['Error']['Code'] in ('NoSuchKey', '404'):
                return None
            logger.error(
                "Failed to read blob from S3",
                bucket=self.bucket,
                key=key,
                error_code=e.response['Error']['Code'],
                error_message=e.response['Error']['Message']
            )
            raise StorageError(f"failed to read blob {key}: {e}", key=key) from e

        except BotoCoreError as e:
            logger.error("Unexpected error reading blob from S3", bucket=self.bucket, key=key, error=str(e))
            raise StorageError(f"failed to read blob {key}: {e}", key=key) from e

    def delete_blob(self, key: str) -> bool:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=self._key(key))
            return True
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to delete blob {key}: {e}", key=key) from e


def create_blob_store(settings: DeliverySettings) -> BlobStore:
    """
    Create the blob store selected by settings.storage_backend.

    Raises:
        ConfigurationError: If the backend cannot be built from settings
    """
    backend = settings.storage_backend
    if backend == 'memory':
        return InMemoryBlobStore()
    if backend == 'file':
        return FileBlobStore(settings.storage_path)
    if backend == 's3':
        if not settings.s3_bucket:
            raise ConfigurationError("s3_bucket is required for the s3 storage backend")
        return S3BlobStore(bucket=settings.s3_bucket)
    raise ConfigurationError(f"unknown storage backend: {backend}")
