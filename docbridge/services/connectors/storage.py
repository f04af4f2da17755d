"""
DocBridge - Connector Storage
=============================

Persistence helpers used by connectors:

- ImportedDocumentStore: content-hash deduplication and upsert keyed by
  (connector_id, external_id)
- CredentialStore: credential rows updated with an optimistic
  compare-and-swap so concurrent token refreshes never overwrite a newer token
"""

import asyncio
import base64
import hashlib
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from docbridge.db.database import get_async_session_factory
from docbridge.db.models import ConnectorInstance, ImportedDocument, ProcessingStatus
from docbridge.services.base import BaseService

logger = structlog.get_logger(__name__)


def compute_content_hash(content: Union[str, bytes]) -> str:
    """SHA-256 hex digest of the exact content that gets stored."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def encode_binary(data: bytes) -> str:
    """Base64-encode binary payloads so they can be stored and hashed as text."""
    return base64.b64encode(data).decode("ascii")


class StoreOutcome(str, Enum):
    """What a single upsert did."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class StoredDocument(BaseModel):
    """Payload for one imported-document upsert."""
    connector_id: Optional[str] = None
    org_id: Optional[str] = None
    external_id: str
    title: str
    content: str
    file_type: Optional[str] = None
    file_size: int = 0
    external_url: Optional[str] = None
    source_metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Imported Documents
# =============================================================================

class ImportedDocumentStore(BaseService):
    """
    Upserts imported documents with content-hash deduplication.

    - no row: insert with sync_count=1
    - same hash: bump sync_count and last_synced_at only
    - different hash: rewrite content and reset downstream processing flags

    Writes through one store instance are serialized; an AsyncSession is
    opened per write so concurrent sync batches never share one.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        organization_id=None,
        user_id=None,
    ):
        super().__init__(organization_id, user_id)
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    def _factory(self) -> async_sessionmaker:
        return self._session_factory or get_async_session_factory()

    @staticmethod
    def _key_clause(connector_id: Optional[str], external_id: str):
        connector_clause = (
            ImportedDocument.connector_id.is_(None)
            if connector_id is None
            else ImportedDocument.connector_id == connector_id
        )
        return connector_clause, ImportedDocument.external_id == external_id

    async def store(self, document: StoredDocument) -> StoreOutcome:
        """Insert, update or touch the row for this document."""
        async with self._lock:
            try:
                return await self._store_once(document)
            except IntegrityError:
                # Another writer inserted the same key first
                self.log_debug("Concurrent insert detected, retrying as update", external_id=document.external_id)
                return await self._store_once(document)

    async def _store_once(self, document: StoredDocument) -> StoreOutcome:
        content_hash = compute_content_hash(document.content)
        now = datetime.now(timezone.utc)

        async with self._factory()() as session:
            try:
                result = await session.execute(
                    select(ImportedDocument).where(
                        *self._key_clause(document.connector_id, document.external_id)
                    )
                )
                existing = result.scalar_one_or_none()

                if existing is None:
                    session.add(ImportedDocument(
                        connector_id=document.connector_id,
                        org_id=document.org_id,
                        external_id=document.external_id,
                        external_url=document.external_url,
                        title=document.title,
                        content=document.content,
                        content_hash=content_hash,
                        file_type=document.file_type,
                        file_size=document.file_size,
                        source_metadata=document.source_metadata,
                        processing_status=ProcessingStatus.PENDING.value,
                        chunks_generated=False,
                        embeddings_generated=False,
                        first_synced_at=now,
                        last_synced_at=now,
                        sync_count=1,
                    ))
                    outcome = StoreOutcome.CREATED
                elif existing.content_hash == content_hash:
                    existing.sync_count += 1
                    existing.last_synced_at = now
                    outcome = StoreOutcome.UNCHANGED
                else:
                    existing.title = document.title
                    existing.content = document.content
                    existing.content_hash = content_hash
                    existing.file_type = document.file_type
                    existing.file_size = document.file_size
                    existing.external_url = document.external_url
                    existing.source_metadata = document.source_metadata
                    existing.processing_status = ProcessingStatus.PENDING.value
                    existing.chunks_generated = False
                    existing.embeddings_generated = False
                    existing.sync_count += 1
                    existing.last_synced_at = now
                    outcome = StoreOutcome.UPDATED

                await session.commit()
            except Exception:
                await session.rollback()
                raise

        self.log_debug(
            "Imported document stored",
            connector_id=document.connector_id,
            external_id=document.external_id,
            outcome=outcome.value,
        )
        return outcome

    async def get(self, connector_id: Optional[str], external_id: str) -> Optional[ImportedDocument]:
        async with self._factory()() as session:
            result = await session.execute(
                select(ImportedDocument).where(*self._key_clause(connector_id, external_id))
            )
            return result.scalar_one_or_none()

    async def count(self, connector_id: Optional[str] = None, org_id: Optional[str] = None) -> int:
        query = select(func.count(ImportedDocument.id))
        if connector_id is not None:
            query = query.where(ImportedDocument.connector_id == connector_id)
        if org_id is not None:
            query = query.where(ImportedDocument.org_id == org_id)
        async with self._factory()() as session:
            return (await session.execute(query)).scalar_one()

    async def delete_for_connector(self, connector_id: str) -> int:
        async with self._lock:
            async with self._factory()() as session:
                result = await session.execute(
                    delete(ImportedDocument).where(ImportedDocument.connector_id == connector_id)
                )
                await session.commit()
                return result.rowcount or 0


# =============================================================================
# Credentials
# =============================================================================

class CredentialStore(ABC):
    """Base interface for connector credential persistence."""

    @abstractmethod
    async def load(self, connector_id: str) -> Optional[Dict[str, Any]]:
        """Stored credentials for a connector, or None."""
        pass

    @abstractmethod
    async def compare_and_swap(
        self,
        connector_id: str,
        expected_access_token: str,
        credentials: Dict[str, Any],
    ) -> bool:
        """Replace credentials only if the stored access token is still the expected one."""
        pass


class InMemoryCredentialStore(CredentialStore):
    """In-memory credential store."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._credentials: Dict[str, Dict[str, Any]] = dict(initial or {})
        self.writes = 0

    async def load(self, connector_id):
        return self._credentials.get(connector_id)

    async def compare_and_swap(self, connector_id, expected_access_token, credentials) -> bool:
        current = self._credentials.get(connector_id)
        if current is not None and current.get("access_token") != expected_access_token:
            return False
        self._credentials[connector_id] = credentials
        self.writes += 1
        return True


class SQLCredentialStore(CredentialStore):
    """
    Credential store backed by connector_instances.

    The swap is guarded by credentials_version so two processes refreshing
    the same connector cannot both win.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker:
        return self._session_factory or get_async_session_factory()

    async def load(self, connector_id):
        async with self._factory()() as session:
            result = await session.execute(
                select(ConnectorInstance.credentials).where(
                    ConnectorInstance.id == uuid.UUID(str(connector_id))
                )
            )
            return result.scalar_one_or_none()

    async def compare_and_swap(self, connector_id, expected_access_token, credentials) -> bool:
        instance_id = uuid.UUID(str(connector_id))
        async with self._factory()() as session:
            row = (await session.execute(
                select(ConnectorInstance.credentials, ConnectorInstance.credentials_version).where(
                    ConnectorInstance.id == instance_id
                )
            )).one_or_none()
            if row is None:
                return False

            stored, version = row
            if (stored or {}).get("access_token") != expected_access_token:
                logger.info("Credential swap rejected, stored token changed", connector_id=str(connector_id))
                return False

            result = await session.execute(
                update(ConnectorInstance)
                .where(
                    ConnectorInstance.id == instance_id,
                    ConnectorInstance.credentials_version == version,
                )
                .values(
                    credentials=credentials,
                    credentials_version=version + 1,
                    credentials_updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            return result.rowcount == 1
