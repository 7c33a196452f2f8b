"""Object storage for product files.

``LocalStorage`` keeps objects on disk (development and tests);
``SupabaseStorage`` talks to a Supabase Storage bucket. Route handlers get
the configured backend through the ``get_storage`` dependency.
"""
import logging
from pathlib import Path
from typing import Optional

from supabase import create_client

from app.core.exceptions import StorageError
from app.core.settings import settings

logger = logging.getLogger(__name__)


class StorageBackend:
    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def download(self, key: str) -> bytes:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def signed_url(self, key: str, expires_in: int) -> str:
        raise NotImplementedError


class LocalStorage(StorageBackend):
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to upload file to storage: {e}")
        logger.info("Stored %s (%d bytes)", key, len(data))
        return key

    def download(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to download file from storage: {e}")

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete file from storage: {e}")

    def signed_url(self, key: str, expires_in: int) -> str:
        # Local files are only reachable through the token-checked media route.
        return f"/api/media/{key}"


class SupabaseStorage(StorageBackend):
    def __init__(self, url: str, service_key: str, bucket: str):
        try:
            self.client = create_client(url, service_key)
        except Exception as e:
            raise StorageError(f"Failed to create Supabase client: {e}")
        self.bucket = bucket
        logger.info("Supabase storage client initialized for bucket %s", bucket)

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        try:
            self.client.storage.from_(self.bucket).upload(
                path=key,
                file=data,
                file_options={"content-type": content_type or "application/octet-stream", "upsert": "false"},
            )
        except Exception as e:
            logger.error("Storage upload failed for %s: %s", key, e)
            raise StorageError(f"Failed to upload file to storage: {e}")
        return key

    def download(self, key: str) -> bytes:
        try:
            return self.client.storage.from_(self.bucket).download(key)
        except Exception as e:
            logger.error("Storage download failed for %s: %s", key, e)
            raise StorageError(f"Failed to download file from storage: {e}")

    def delete(self, key: str) -> None:
        try:
            self.client.storage.from_(self.bucket).remove([key])
        except Exception as e:
            raise StorageError(f"Failed to delete file from storage: {e}")

    def signed_url(self, key: str, expires_in: int) -> str:
        try:
            result = self.client.storage.from_(self.bucket).create_signed_url(key, expires_in)
        except Exception as e:
            raise StorageError(f"Failed to sign storage URL: {e}")
        return result.get("signedURL") or result.get("signedUrl")


_storage: Optional[StorageBackend] = None


def get_storage() -> StorageBackend:
    global _storage
    if _storage is None:
        if settings.storage_backend == "supabase":
            _storage = SupabaseStorage(settings.supabase_url, settings.supabase_service_key, settings.storage_bucket)
        else:
            _storage = LocalStorage(settings.local_storage_dir)
    return _storage
