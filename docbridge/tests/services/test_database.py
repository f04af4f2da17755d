"""
DocBridge - Database Setup Tests
================================

Tests for the module-level engine, session helpers and lifecycle, using
the in-memory SQLite URL set in conftest.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from docbridge.db import database
from docbridge.db.database import (
    DatabaseConfig,
    async_session_context,
    close_db,
    get_async_engine,
    get_async_session_factory,
    init_db,
)
from docbridge.db.models import ImportedDocument
from docbridge.services.connectors.storage import ImportedDocumentStore, StoredDocument, StoreOutcome


@pytest.fixture
async def database_ready():
    await init_db()
    yield
    await close_db()


class TestDatabaseConfig:
    """Tests for URL handling."""

    def test_sync_urls_are_rewritten(self):
        assert DatabaseConfig("sqlite:///./local.db").async_url == "sqlite+aiosqlite:///./local.db"
        assert DatabaseConfig("postgresql://u:p@db/docs").async_url == "postgresql+asyncpg://u:p@db/docs"

    def test_async_urls_are_kept(self):
        config = DatabaseConfig("sqlite+aiosqlite:///:memory:")

        assert config.async_url == "sqlite+aiosqlite:///:memory:"
        assert config.is_sqlite is True


class TestLifecycle:
    """Tests for init_db, async_session_context and close_db."""

    async def test_default_factory_is_shared(self, database_ready):
        assert get_async_session_factory() is get_async_session_factory()
        assert get_async_engine() is database.async_engine

    async def test_store_uses_default_factory(self, database_ready):
        store = ImportedDocumentStore(organization_id="org-db")

        outcome = await store.store(StoredDocument(
            connector_id="conn-db",
            external_id="doc-1",
            title="Doc",
            content="hello",
        ))

        assert outcome == StoreOutcome.CREATED
        async with async_session_context() as session:
            count = await session.scalar(select(func.count()).select_from(ImportedDocument))
        assert count == 1

    async def test_context_rolls_back_on_error(self, database_ready):
        with pytest.raises(RuntimeError):
            async with async_session_context() as session:
                session.add(ImportedDocument(
                    connector_id="conn-db",
                    external_id="doc-2",
                    title="Doc",
                    content="x",
                    content_hash="0" * 64,
                    first_synced_at=datetime.now(timezone.utc),
                    last_synced_at=datetime.now(timezone.utc),
                ))
                await session.flush()
                raise RuntimeError("boom")

        async with async_session_context() as session:
            count = await session.scalar(select(func.count()).select_from(ImportedDocument))
        assert count == 0

    async def test_close_db_resets_globals(self):
        get_async_session_factory()

        await close_db()

        assert database.async_engine is None
        assert database.AsyncSessionLocal is None
