"""Storage backend abstraction for reading uploaded documents.

A document row carries a (bucket, path) locator; the backend turns it into bytes.
Missing objects raise FileNotFoundError, anything else raises TransientIOError.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from docchat.config import settings
from docchat.core.storage.cloudflare_r2 import CloudflareR2Storage, get_r2_storage
from docchat.errors import TransientIOError
from docchat.utils.logging import logger


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def get_bytes(self, bucket: str, storage_path: str) -> bytes:
        """
        Fetch the raw bytes of a stored object.

        Raises:
            FileNotFoundError: If the object doesn't exist
            TransientIOError: On any other fetch failure
        """
        pass

    @abstractmethod
    def exists(self, bucket: str, storage_path: str) -> bool:
        pass

    @abstractmethod
    def get_storage_type(self) -> str:
        """Return storage backend type ('r2' or 'local')."""
        pass


class R2StorageBackend(StorageBackend):
    """Cloudflare R2 storage backend (S3-compatible)."""

    def __init__(self, r2_client: Optional[CloudflareR2Storage] = None):
        self.r2 = r2_client or get_r2_storage()

    def get_bytes(self, bucket: str, storage_path: str) -> bytes:
        try:
            return self.r2.get_bytes(storage_path, bucket=bucket or None)
        except FileNotFoundError:
            raise
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"R2 fetch failed for {bucket}/{storage_path}: {e}", stage="context") from e

    def exists(self, bucket: str, storage_path: str) -> bool:
        return self.r2.exists(storage_path, bucket=bucket or None)

    def get_storage_type(self) -> str:
        return "r2"


class LocalFilesystemBackend(StorageBackend):
    """Local filesystem storage backend: <base_path>/<bucket>/<storage_path>."""

    def __init__(self, base_path: str = "uploads"):
        self.base_path = Path(base_path)

    def _resolve(self, bucket: str, storage_path: str) -> Path:
        root = (self.base_path / bucket).resolve() if bucket else self.base_path.resolve()
        target = (root / storage_path).resolve()
        # Reject locators that escape the bucket directory
        if root != target and root not in target.parents:
            raise FileNotFoundError(f"Invalid storage path: {storage_path}")
        return target

    def get_bytes(self, bucket: str, storage_path: str) -> bytes:
        file_path = self._resolve(bucket, storage_path)

        if not file_path.is_file():
            raise FileNotFoundError(f"File not found in local storage: {bucket}/{storage_path}")

        try:
            data = file_path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read from local storage: {storage_path}", exc_info=True)
            raise TransientIOError(f"Local read failed for {storage_path}: {e}", stage="context") from e

        logger.debug("Read file from local storage", extra={"bucket": bucket, "key": storage_path, "size": len(data)})
        return data

    def exists(self, bucket: str, storage_path: str) -> bool:
        try:
            return self._resolve(bucket, storage_path).is_file()
        except FileNotFoundError:
            return False

    def get_storage_type(self) -> str:
        return "local"


def get_storage_backend(force_type: Optional[str] = None) -> StorageBackend:
    """
    Get the configured storage backend.

    Args:
        force_type: Optional override for storage type ('r2' or 'local').
                   If not provided, uses settings.storage_backend.

    Raises:
        ConfigurationError: If R2 is requested but not configured
    """
    storage_type = (force_type or settings.storage_backend).lower()

    if storage_type == "r2":
        backend = R2StorageBackend()
        logger.info("Using R2 storage backend for documents")
        return backend

    backend = LocalFilesystemBackend(settings.local_storage_path)
    logger.info("Using local filesystem storage backend for documents", extra={"base_path": settings.local_storage_path})
    return backend


__all__ = [
    "StorageBackend",
    "R2StorageBackend",
    "LocalFilesystemBackend",
    "get_storage_backend",
]
