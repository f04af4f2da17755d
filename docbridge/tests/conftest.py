"""
DocBridge - Pytest Configuration
================================

Shared fixtures and configuration for all tests.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest

# Set test environment BEFORE any imports
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["GOOGLE_CLIENT_ID"] = "google-client"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-secret"
os.environ["MICROSOFT_CLIENT_ID"] = "microsoft-client"
os.environ["MICROSOFT_CLIENT_SECRET"] = "microsoft-secret"
os.environ["ZOOM_CLIENT_ID"] = "zoom-client"
os.environ["ZOOM_CLIENT_SECRET"] = "zoom-secret"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docbridge.core.logging import configure_logging
from docbridge.db.models import Base
from docbridge.services.blob_storage import InMemoryBlobStorage
from docbridge.services.connectors.base import ConnectorCredentials
from docbridge.services.connectors.storage import ImportedDocumentStore

configure_logging(level="WARNING", log_format="console")

TEST_ORG_ID = "org-test"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def document_store(session_factory) -> ImportedDocumentStore:
    return ImportedDocumentStore(session_factory=session_factory, organization_id=TEST_ORG_ID)


@pytest.fixture
def blob_storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


# =============================================================================
# Credential Fixtures
# =============================================================================

@pytest.fixture
def valid_credentials() -> ConnectorCredentials:
    """Tokens that stay valid for the whole test."""
    return ConnectorCredentials(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def expiring_credentials() -> ConnectorCredentials:
    """Tokens inside the refresh buffer."""
    return ConnectorCredentials(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=2),
    )
