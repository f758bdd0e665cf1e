"""
Object storage for uploaded documents. S3 OR local filesystem. Controlled by FF_USE_S3 flag.

The extraction pipeline only needs two things from here: a storage path to
record on the document row and a URL the analysis service can fetch.
"""

import logging
import mimetypes
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    path: str        # key within the bucket / base dir, recorded on the document
    public_url: str  # what the analysis service fetches


def build_storage_path(filename: str, owner_id: str) -> str:
    """{owner}/{epoch_ms}_{random}.{ext} — unique per upload, grouped by owner."""
    ext = Path(filename).suffix.lower()
    unique = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{ext}"
    return f"{owner_id}/{unique}"


class StorageBackend(ABC):
    @abstractmethod
    async def upload(self, file_bytes: bytes, filename: str, owner_id: str) -> StoredFile:
        """Store a file. Returns its storage path and public URL."""
        ...

    @abstractmethod
    async def get_url(self, path: str) -> str:
        """Get public/accessible URL for a stored file."""
        ...


class S3Storage(StorageBackend):
    def __init__(self):
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3

            settings = get_settings()
            kwargs = {"region_name": settings.aws_region}
            if settings.aws_access_key_id:
                kwargs["aws_access_key_id"] = settings.aws_access_key_id
                kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def upload(self, file_bytes: bytes, filename: str, owner_id: str) -> StoredFile:
        settings = get_settings()
        key = build_storage_path(filename, owner_id)

        client = self._get_client()
        client.put_object(
            Bucket=settings.s3_bucket_name,
            Key=key,
            Body=file_bytes,
            ContentType=_guess_content_type(filename),
        )

        logger.info("Uploaded to S3: %s (%d bytes)", key, len(file_bytes))
        return StoredFile(path=key, public_url=await self.get_url(key))

    async def get_url(self, path: str) -> str:
        settings = get_settings()
        return f"https://{settings.s3_bucket_name}.s3.{settings.aws_region}.amazonaws.com/{path}"


class LocalStorage(StorageBackend):
    def __init__(self, base_path: str = "./local_storage"):
        self.base_path = Path(base_path)

    async def upload(self, file_bytes: bytes, filename: str, owner_id: str) -> StoredFile:
        key = build_storage_path(filename, owner_id)

        file_path = self.base_path / key
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(file_bytes)

        logger.info("Saved locally: %s", file_path)
        return StoredFile(path=key, public_url=await self.get_url(key))

    async def get_url(self, path: str) -> str:
        return str(self.base_path / path)


def get_storage() -> StorageBackend:
    """Return the active storage backend based on feature flags."""
    flags = get_flags()
    if flags.use_s3:
        return S3Storage()
    return LocalStorage()


def _guess_content_type(filename: str) -> str:
    ct, _ = mimetypes.guess_type(filename)
    return ct or "application/octet-stream"
