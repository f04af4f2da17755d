"""
DocBridge - Connector Storage Tests
===================================

Tests for imported-document deduplication and the SQL credential store.
"""

import asyncio
import uuid

import pytest
from sqlalchemy import update

from docbridge.db.models import ConnectorInstance, ImportedDocument, ProcessingStatus
from docbridge.services.connectors.storage import (
    CredentialStore,
    InMemoryCredentialStore,
    SQLCredentialStore,
    StoredDocument,
    StoreOutcome,
    compute_content_hash,
    encode_binary,
)


def make_document(content: str = "hello world", **overrides) -> StoredDocument:
    values = {
        "connector_id": "conn-1",
        "org_id": "org-test",
        "external_id": "file-1",
        "title": "Notes",
        "content": content,
        "file_type": "text/plain",
        "file_size": len(content),
    }
    values.update(overrides)
    return StoredDocument(**values)


# =============================================================================
# Hashing
# =============================================================================

class TestContentHash:
    """Tests for the content hash helpers."""

    def test_hash_is_sha256_hex(self):
        digest = compute_content_hash("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_str_and_utf8_bytes_hash_equal(self):
        assert compute_content_hash("zürich") == compute_content_hash("zürich".encode("utf-8"))

    def test_encode_binary_is_base64(self):
        assert encode_binary(b"\x00\x01\x02") == "AAEC"


# =============================================================================
# Imported Documents
# =============================================================================

class TestImportedDocumentStore:
    """Tests for the dedup upsert."""

    async def test_first_store_creates_row(self, document_store):
        outcome = await document_store.store(make_document())

        assert outcome == StoreOutcome.CREATED
        row = await document_store.get("conn-1", "file-1")
        assert row.sync_count == 1
        assert row.content_hash == compute_content_hash("hello world")
        assert row.processing_status == ProcessingStatus.PENDING.value
        assert row.first_synced_at == row.last_synced_at

    async def test_same_content_only_bumps_sync_count(self, document_store):
        await document_store.store(make_document())
        outcome = await document_store.store(make_document(title="Renamed but same content"))

        assert outcome == StoreOutcome.UNCHANGED
        row = await document_store.get("conn-1", "file-1")
        assert row.sync_count == 2
        assert row.title == "Notes"

    async def test_changed_content_rewrites_and_resets_processing(self, document_store, session_factory):
        await document_store.store(make_document())
        async with session_factory() as session:
            await session.execute(
                update(ImportedDocument).values(
                    processing_status=ProcessingStatus.COMPLETED.value,
                    chunks_generated=True,
                    embeddings_generated=True,
                )
            )
            await session.commit()

        outcome = await document_store.store(make_document("hello again"))

        assert outcome == StoreOutcome.UPDATED
        row = await document_store.get("conn-1", "file-1")
        assert row.content == "hello again"
        assert row.sync_count == 2
        assert row.processing_status == ProcessingStatus.PENDING.value
        assert row.chunks_generated is False
        assert row.embeddings_generated is False

    async def test_same_external_id_under_other_connector_is_separate(self, document_store):
        await document_store.store(make_document())
        outcome = await document_store.store(make_document(connector_id="conn-2"))

        assert outcome == StoreOutcome.CREATED
        assert await document_store.count() == 2

    async def test_concurrent_stores_create_one_row(self, document_store):
        outcomes = await asyncio.gather(*(document_store.store(make_document()) for _ in range(5)))

        assert outcomes.count(StoreOutcome.CREATED) == 1
        assert outcomes.count(StoreOutcome.UNCHANGED) == 4
        row = await document_store.get("conn-1", "file-1")
        assert row.sync_count == 5

    async def test_count_and_delete_for_connector(self, document_store):
        await document_store.store(make_document(external_id="a"))
        await document_store.store(make_document(external_id="b"))
        await document_store.store(make_document(external_id="c", connector_id="conn-2", org_id="org-other"))

        assert await document_store.count(connector_id="conn-1") == 2
        assert await document_store.count(org_id="org-other") == 1

        removed = await document_store.delete_for_connector("conn-1")

        assert removed == 2
        assert await document_store.count() == 1


# =============================================================================
# Credentials
# =============================================================================

class TestCredentialStoreInterface:
    """Tests for the credential store base class."""

    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            CredentialStore()

    async def test_in_memory_swap_requires_expected_token(self):
        store = InMemoryCredentialStore({"conn-1": {"access_token": "a1"}})

        assert await store.compare_and_swap("conn-1", "stale", {"access_token": "x"}) is False
        assert await store.compare_and_swap("conn-1", "a1", {"access_token": "a2"}) is True
        assert await store.load("conn-1") == {"access_token": "a2"}
        assert store.writes == 1


class TestSQLCredentialStore:
    """Tests for the versioned compare-and-swap."""

    @pytest.fixture
    async def connector_id(self, session_factory) -> uuid.UUID:
        instance = ConnectorInstance(
            org_id="org-test",
            connector_type="google_drive",
            name="Drive",
            credentials={"access_token": "access-1", "refresh_token": "refresh-1"},
            settings={},
        )
        async with session_factory() as session:
            session.add(instance)
            await session.commit()
        return instance.id

    async def test_load_returns_stored_credentials(self, session_factory, connector_id):
        store = SQLCredentialStore(session_factory)

        stored = await store.load(str(connector_id))

        assert stored["access_token"] == "access-1"

    async def test_swap_with_expected_token_bumps_version(self, session_factory, connector_id):
        store = SQLCredentialStore(session_factory)

        swapped = await store.compare_and_swap(str(connector_id), "access-1", {"access_token": "access-2"})

        assert swapped is True
        async with session_factory() as session:
            instance = await session.get(ConnectorInstance, connector_id)
        assert instance.credentials["access_token"] == "access-2"
        assert instance.credentials_version == 1
        assert instance.credentials_updated_at is not None

    async def test_swap_with_stale_token_is_rejected(self, session_factory, connector_id):
        store = SQLCredentialStore(session_factory)
        await store.compare_and_swap(str(connector_id), "access-1", {"access_token": "access-2"})

        swapped = await store.compare_and_swap(str(connector_id), "access-1", {"access_token": "access-3"})

        assert swapped is False
        assert (await store.load(str(connector_id)))["access_token"] == "access-2"

    async def test_swap_for_unknown_connector_fails(self, session_factory):
        store = SQLCredentialStore(session_factory)

        assert await store.compare_and_swap(str(uuid.uuid4()), "access-1", {"access_token": "x"}) is False
