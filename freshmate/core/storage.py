"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for storing uploaded fruit images with
LocalStorage (development) and S3Storage (any S3-compatible object store,
including Google Cloud Storage through its interoperability endpoint).
"""

import os
import asyncio
import random
import string
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from freshmate.core.config import settings
from freshmate.core.exceptions import StorageError
from freshmate.core.logging import get_logger

logger = get_logger(__name__)

KEY_ALPHABET = string.ascii_letters + string.digits
KEY_RANDOM_LENGTH = 10

_system_random = random.SystemRandom()


def build_storage_key(
    filename: str,
    prefix: str = "",
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None
) -> str:
    """
    Generate a collision-resistant storage key for an upload.

    Shape: ``<prefix>/<YYYY-MM-DD_HHMMSS>_<10 random chars>.<ext>``
    """
    now = now or datetime.now(timezone.utc)
    rng = rng or _system_random

    ext = Path(filename).suffix.lstrip(".").lower()
    suffix = "".join(rng.choice(KEY_ALPHABET) for _ in range(KEY_RANDOM_LENGTH))
    name = f"{now.strftime('%Y-%m-%d_%H%M%S')}_{suffix}"
    if ext:
        name = f"{name}.{ext}"

    prefix = prefix.strip("/")
    return f"{prefix}/{name}" if prefix else name


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        storage_key: str,
        content_type: str = "application/octet-stream"
    ) -> str:
        """
        Store bytes under ``storage_key``.

        The object is either fully visible under the key afterwards or
        StorageError is raised and nothing is visible.

        Returns:
            The storage key
        """

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if an object exists in storage."""

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """
        Delete an object from storage.

        Returns:
            True if the object was deleted, False if it did not exist
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """Readiness probe for the backing store."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path not in path.parents:
            raise StorageError(f"Invalid storage key: {storage_key}")
        return path

    def _write_atomic(self, path: Path, file_data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(file_data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def upload(
        self,
        file_data: bytes,
        storage_key: str,
        content_type: str = "application/octet-stream"
    ) -> str:
        path = self._path_for(storage_key)
        try:
            await asyncio.to_thread(self._write_atomic, path, file_data)
        except OSError as e:
            raise StorageError(f"Failed to upload image: {e}", stage="upload")
        return storage_key

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def exists(self, storage_key: str) -> bool:
        return await asyncio.to_thread(self._path_for(storage_key).exists)

    async def delete(self, storage_key: str) -> bool:
        path = self._path_for(storage_key)
        try:
            return await asyncio.to_thread(self._unlink, path)
        except OSError as e:
            raise StorageError(f"Failed to delete {storage_key}: {e}", stage="rollback")

    async def is_available(self) -> bool:
        return self.base_path.is_dir() and os.access(self.base_path, os.W_OK)


class S3Storage(IStorage):
    """S3-compatible object storage implementation for production."""

    NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client=None
    ):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region_name,
        )

    async def upload(
        self,
        file_data: bytes,
        storage_key: str,
        content_type: str = "application/octet-stream"
    ) -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=storage_key,
                Body=file_data,
                ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload image: {e}", stage="upload")
        return storage_key

    async def exists(self, storage_key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=storage_key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in self.NOT_FOUND_CODES:
                return False
            raise StorageError(f"Failed to check {storage_key}: {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to check {storage_key}: {e}")

    async def delete(self, storage_key: str) -> bool:
        # DeleteObject succeeds for missing keys, so look first
        if not await self.exists(storage_key):
            return False
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=storage_key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {storage_key}: {e}", stage="rollback")
        return True

    async def is_available(self) -> bool:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("storage_unavailable", bucket=self.bucket, error=str(e))
            return False


class StorageFactory:
    """
    Factory for creating storage instances.

    Switch STORAGE_BACKEND to "s3" and provide the bucket settings to move
    from local storage to object storage. No code changes required.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on configuration."""
        if cls._instance is None:
            backend = settings.STORAGE_BACKEND.lower()
            if backend == "s3":
                if not settings.S3_BUCKET:
                    raise StorageError("STORAGE_BACKEND=s3 requires S3_BUCKET")
                cls._instance = S3Storage(
                    bucket=settings.S3_BUCKET,
                    endpoint_url=settings.S3_ENDPOINT_URL,
                    region_name=settings.S3_REGION,
                    access_key=settings.S3_ACCESS_KEY,
                    secret_key=settings.S3_SECRET_KEY,
                )
            elif backend == "local":
                cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
            else:
                raise StorageError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")

            logger.info("storage_initialized", backend=backend)

        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
