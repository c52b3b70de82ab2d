"""Content-addressed storage for local copies of attachment bytes.

This module provides:
- AttachmentStorage: abstract blob store keyed by SHA-256 content hash
- LocalFSStorage: files under a base directory
- S3Storage: objects in an S3-compatible bucket
- create_storage: factory from a configuration dict
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from attachsync.core.hashing import is_content_hash

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class BlobNotFoundError(Exception):
    """Raised when no blob is stored for a content hash."""


class AttachmentStorage(ABC):
    """Abstract blob store for attachment content.

    Blobs are immutable: the key is the SHA-256 of the bytes, so storing the
    same content twice is a no-op.
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where blobs are stored."""

    @abstractmethod
    def key_for(self, sha256: str) -> str:
        """Return the storage key (path or object key) for a hash."""

    @abstractmethod
    def put(self, sha256: str, data: bytes) -> str:
        """Store attachment bytes.

        Args:
            sha256: Content hash of ``data``.
            data: Attachment bytes.

        Returns:
            The storage key, recorded as the attachment's local path.
        """

    @abstractmethod
    def get(self, sha256: str) -> bytes:
        """Retrieve attachment bytes.

        Raises:
            BlobNotFoundError: If nothing is stored for the hash.
        """

    @abstractmethod
    def exists(self, sha256: str) -> bool:
        """Check if bytes are stored for a hash."""

    @abstractmethod
    def delete(self, sha256: str) -> bool:
        """Delete a blob. Returns False if it didn't exist."""


def _check_hash(sha256: str) -> None:
    if not is_content_hash(sha256):
        raise ValueError(f"Not a SHA-256 hex digest: {sha256!r}")


class LocalFSStorage(AttachmentStorage):
    """Local filesystem blob store.

    Blobs are stored in subdirectories named after the first two hash
    characters to avoid too many files in a single directory.
    """

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        return f"Local filesystem: {self._base_path}"

    def _blob_path(self, sha256: str) -> Path:
        _check_hash(sha256)
        return self._base_path / sha256[:2] / sha256

    def key_for(self, sha256: str) -> str:
        return str(self._blob_path(sha256))

    def put(self, sha256: str, data: bytes) -> str:
        path = self._blob_path(sha256)
        if not path.exists():
            path.parent.mkdir(exist_ok=True)
            # Write then rename so readers never see a partial blob
            tmp_path = path.with_suffix(".part")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
            logger.debug(f"Stored blob {sha256} ({len(data)} bytes)")
        return str(path)

    def get(self, sha256: str) -> bytes:
        path = self._blob_path(sha256)
        if not path.exists():
            logger.warning(f"Blob {sha256} missing from {self._base_path}")
            raise BlobNotFoundError(f"Blob not found: {sha256}")
        return path.read_bytes()

    def exists(self, sha256: str) -> bool:
        return self._blob_path(sha256).exists()

    def delete(self, sha256: str) -> bool:
        path = self._blob_path(sha256)
        if path.exists():
            path.unlink()
            return True
        return False


class S3Storage(AttachmentStorage):
    """S3-compatible blob store (AWS, OVH, MinIO, etc.)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
        prefix: str = "attachments",
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: S3 bucket name.
            endpoint_url: Custom endpoint URL (for OVH, MinIO, etc.).
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
            prefix: Key prefix for attachment objects.
        """
        import boto3

        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._prefix = prefix.strip("/")
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @property
    def location(self) -> str:
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}/{self._prefix}"
        return f"S3: s3://{self._bucket}/{self._prefix}"

    def key_for(self, sha256: str) -> str:
        _check_hash(sha256)
        return f"{self._prefix}/{sha256[:2]}/{sha256}"

    def put(self, sha256: str, data: bytes) -> str:
        key = self.key_for(sha256)
        self._client.put_object(Bucket=self._bucket, Key=key, Body=data)
        logger.debug(f"Stored blob {sha256} as s3://{self._bucket}/{key}")
        return key

    def get(self, sha256: str) -> bytes:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self.key_for(sha256))
            body: bytes = response["Body"].read()
            return body
        except ClientError as e:
            if e.response["Error"]["Code"] == "NoSuchKey":
                logger.warning(f"Blob {sha256} missing from bucket {self._bucket}")
                raise BlobNotFoundError(f"Blob not found: {sha256}") from e
            raise

    def exists(self, sha256: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client.head_object(Bucket=self._bucket, Key=self.key_for(sha256))
            return True
        except ClientError:
            return False

    def delete(self, sha256: str) -> bool:
        if not self.exists(sha256):
            return False
        self._client.delete_object(Bucket=self._bucket, Key=self.key_for(sha256))
        return True


def create_storage(config: dict[str, str | None]) -> AttachmentStorage:
    """Factory function to create storage from configuration.

    Args:
        config: Storage configuration dict with keys:
            - type: "local" or "s3"
            - For local: local_path
            - For S3: bucket, endpoint_url, access_key, secret_key, region

    Returns:
        Configured AttachmentStorage instance.

    Raises:
        ValueError: If storage type is unknown or S3 has no bucket.
    """
    storage_type = config.get("type") or "local"

    if storage_type == "local":
        return LocalFSStorage(config.get("local_path") or "./attachments")

    if storage_type == "s3":
        bucket = config.get("bucket")
        if not bucket:
            raise ValueError("S3 storage requires 'bucket' configuration")
        return S3Storage(
            bucket=bucket,
            endpoint_url=config.get("endpoint_url"),
            access_key=config.get("access_key"),
            secret_key=config.get("secret_key"),
            region=config.get("region") or "us-east-1",
        )

    raise ValueError(f"Unknown storage type: {storage_type}")
