"""
DocBridge - Blob Storage
========================

Object storage used by the file-upload and URL-import connectors.

Two backends:
- LocalBlobStorage: one directory per bucket under settings.UPLOAD_DIR
- InMemoryBlobStorage: process-local dict, for tests and previews
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog

from docbridge.core.config import settings
from docbridge.services.base import NotFoundException, ProviderException

logger = structlog.get_logger(__name__)

BlobData = Union[bytes, str]


# =============================================================================
# Storage Interface
# =============================================================================

class BlobStorage:
    """Base interface for blob storage."""

    async def upload(
        self,
        bucket: str,
        path: str,
        data: BlobData,
        content_type: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    async def download(self, bucket: str, path: str) -> bytes:
        raise NotImplementedError

    async def delete(self, bucket: str, path: str) -> bool:
        raise NotImplementedError

    async def bucket_exists(self, bucket: str) -> bool:
        raise NotImplementedError

    async def list_buckets(self) -> List[str]:
        raise NotImplementedError


def _to_bytes(data: BlobData) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


class InMemoryBlobStorage(BlobStorage):
    """In-memory blob storage."""

    def __init__(self, buckets: Optional[List[str]] = None):
        self._objects: Dict[str, Dict[str, bytes]] = {
            name: {} for name in (buckets if buckets is not None else [settings.STORAGE_BUCKET])
        }
        self._content_types: Dict[str, str] = {}

    async def upload(self, bucket, path, data, content_type=None) -> str:
        if bucket not in self._objects:
            raise ProviderException("memory", f"Bucket not found: {bucket}", status_code=404)
        self._objects[bucket][path] = _to_bytes(data)
        if content_type:
            self._content_types[f"{bucket}/{path}"] = content_type
        return path

    async def download(self, bucket, path) -> bytes:
        try:
            return self._objects[bucket][path]
        except KeyError:
            raise NotFoundException("Blob", f"{bucket}/{path}")

    async def delete(self, bucket, path) -> bool:
        return self._objects.get(bucket, {}).pop(path, None) is not None

    async def bucket_exists(self, bucket) -> bool:
        return bucket in self._objects

    async def list_buckets(self) -> List[str]:
        return list(self._objects.keys())

    def get_object(self, bucket: str, path: str) -> Optional[bytes]:
        return self._objects.get(bucket, {}).get(path)


class LocalBlobStorage(BlobStorage):
    """Filesystem-backed blob storage rooted at UPLOAD_DIR."""

    def __init__(self, root: Optional[str] = None, create_buckets: bool = True):
        self._root = Path(root or settings.UPLOAD_DIR)
        self._create_buckets = create_buckets

    def _resolve(self, bucket: str, path: str) -> Path:
        bucket_dir = (self._root / bucket).resolve()
        target = (bucket_dir / path).resolve()
        if bucket_dir not in target.parents:
            raise ProviderException("local", f"Path escapes bucket: {path}", status_code=400)
        return target

    async def upload(self, bucket, path, data, content_type=None) -> str:
        bucket_dir = self._root / bucket
        if not bucket_dir.exists() and not self._create_buckets:
            raise ProviderException("local", f"Bucket not found: {bucket}", status_code=404)

        target = self._resolve(bucket, path)
        payload = _to_bytes(data)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)

        await asyncio.get_running_loop().run_in_executor(None, _write)
        logger.debug("Blob written", bucket=bucket, path=path, size=len(payload))
        return path

    async def download(self, bucket, path) -> bytes:
        target = self._resolve(bucket, path)
        if not target.exists():
            raise NotFoundException("Blob", f"{bucket}/{path}")
        return await asyncio.get_running_loop().run_in_executor(None, target.read_bytes)

    async def delete(self, bucket, path) -> bool:
        target = self._resolve(bucket, path)
        if not target.exists():
            return False
        target.unlink()
        return True

    async def bucket_exists(self, bucket) -> bool:
        if self._create_buckets:
            (self._root / bucket).mkdir(parents=True, exist_ok=True)
        return (self._root / bucket).is_dir()

    async def list_buckets(self) -> List[str]:
        if not self._root.exists():
            return []
        return sorted(p.name for p in self._root.iterdir() if p.is_dir())


_default_storage: Optional[BlobStorage] = None


def get_blob_storage() -> BlobStorage:
    """Get the process-wide blob storage (local filesystem by default)."""
    global _default_storage
    if _default_storage is None:
        _default_storage = LocalBlobStorage()
    return _default_storage
