"""
DocBridge - Blob Storage Tests
==============================
"""

import pytest

from docbridge.services.base import NotFoundException, ProviderException
from docbridge.services.blob_storage import InMemoryBlobStorage, LocalBlobStorage


class TestLocalBlobStorage:
    """Tests for the filesystem backend."""

    async def test_upload_download_delete(self, tmp_path):
        storage = LocalBlobStorage(root=str(tmp_path))

        await storage.upload("recordings", "org_1/uploads/a.md", "# Title")

        assert await storage.download("recordings", "org_1/uploads/a.md") == b"# Title"
        assert (tmp_path / "recordings" / "org_1" / "uploads" / "a.md").exists()
        assert await storage.delete("recordings", "org_1/uploads/a.md") is True
        assert await storage.delete("recordings", "org_1/uploads/a.md") is False

    async def test_missing_blob(self, tmp_path):
        storage = LocalBlobStorage(root=str(tmp_path))

        with pytest.raises(NotFoundException):
            await storage.download("recordings", "nope.bin")

    async def test_path_cannot_escape_bucket(self, tmp_path):
        storage = LocalBlobStorage(root=str(tmp_path))

        with pytest.raises(ProviderException):
            await storage.upload("recordings", "../outside.txt", b"x")

    async def test_buckets(self, tmp_path):
        strict = LocalBlobStorage(root=str(tmp_path), create_buckets=False)

        assert await strict.bucket_exists("recordings") is False
        with pytest.raises(ProviderException):
            await strict.upload("recordings", "a.txt", b"x")

        lenient = LocalBlobStorage(root=str(tmp_path))
        assert await lenient.bucket_exists("recordings") is True
        assert await lenient.list_buckets() == ["recordings"]


class TestInMemoryBlobStorage:
    """Tests for the in-memory backend."""

    async def test_unknown_bucket_is_rejected(self):
        storage = InMemoryBlobStorage(buckets=["imports"])

        with pytest.raises(ProviderException):
            await storage.upload("recordings", "a.txt", b"x")

    async def test_round_trip(self):
        storage = InMemoryBlobStorage()

        await storage.upload("recordings", "a.txt", "text", content_type="text/plain")

        assert await storage.download("recordings", "a.txt") == b"text"
        assert storage.get_object("recordings", "missing") is None
        assert await storage.list_buckets() == ["recordings"]
