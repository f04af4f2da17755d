"""
DocBridge - SQLAlchemy Models
=============================

Database models for connector instances, imported documents and sync logs.
Uses SQLAlchemy 2.0 with async support; works on PostgreSQL and SQLite.
"""

import json
import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, TypeEngine


# =============================================================================
# Database-agnostic Type Decorators
# =============================================================================

class GUID(TypeDecorator):
    """Platform-independent GUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36) for SQLite/other databases.
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, uuid.UUID):
                return str(value)
            return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        else:
            if not isinstance(value, uuid.UUID):
                return uuid.UUID(value)
            return value


class JSONType(TypeDecorator):
    """Platform-independent JSON type.

    Uses PostgreSQL's JSONB when available, otherwise uses Text with JSON serialization.
    """
    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB)
        else:
            return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        return json.dumps(value, default=str)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        return json.loads(value)


# =============================================================================
# Enums
# =============================================================================

class ProcessingStatus(str, PyEnum):
    """Downstream processing status of an imported document."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConnectorSyncState(str, PyEnum):
    """Sync state of a connector instance."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncLogStatus(str, PyEnum):
    """Outcome recorded in a sync log row."""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Mixins
# =============================================================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class UUIDMixin:
    """Mixin for UUID primary key."""
    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


# =============================================================================
# Models
# =============================================================================

class ConnectorInstance(Base, UUIDMixin, TimestampMixin):
    """
    A configured connector for one organization.

    Holds the vendor credentials (rewritten on every token refresh) and
    the connector-specific settings passed to the adapter config.
    """
    __tablename__ = "connector_instances"

    org_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    connector_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    credentials: Mapped[dict] = mapped_column(JSONType(), default=dict)
    settings: Mapped[dict] = mapped_column(JSONType(), default=dict)
    credentials_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credentials_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    sync_status: Mapped[str] = mapped_column(String(20), default=ConnectorSyncState.IDLE.value)
    sync_error: Mapped[Optional[str]] = mapped_column(Text)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255))

    def __repr__(self) -> str:
        return f"<ConnectorInstance(type='{self.connector_type}', name='{self.name}')>"


class ImportedDocument(Base, UUIDMixin, TimestampMixin):
    """
    A document imported through a connector.

    Keyed by (connector_id, external_id). The content hash decides whether
    a re-sync rewrites the row and resets downstream processing flags.
    """
    __tablename__ = "imported_documents"

    connector_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    org_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    external_id: Mapped[str] = mapped_column(String(500), nullable=False)
    external_url: Mapped[Optional[str]] = mapped_column(String(2000))

    title: Mapped[str] = mapped_column(String(1000), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    file_type: Mapped[Optional[str]] = mapped_column(String(255))
    file_size: Mapped[int] = mapped_column(BigInteger, default=0)
    source_metadata: Mapped[dict] = mapped_column(JSONType(), default=dict)

    processing_status: Mapped[str] = mapped_column(String(20), default=ProcessingStatus.PENDING.value)
    chunks_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    embeddings_generated: Mapped[bool] = mapped_column(Boolean, default=False)

    first_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sync_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint("connector_id", "external_id", name="uq_imported_documents_connector_external"),
    )

    def __repr__(self) -> str:
        return f"<ImportedDocument(external_id='{self.external_id}', sync_count={self.sync_count})>"


class ConnectorSyncLog(Base, UUIDMixin):
    """One row per sync run of a connector instance."""
    __tablename__ = "connector_sync_logs"

    connector_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("connector_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    org_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(20), default="manual")
    status: Mapped[str] = mapped_column(String(20), default=SyncLogStatus.RUNNING.value)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    documents_synced: Mapped[int] = mapped_column(Integer, default=0)
    documents_updated: Mapped[int] = mapped_column(Integer, default=0)
    documents_failed: Mapped[int] = mapped_column(Integer, default=0)
    documents_deleted: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    log_metadata: Mapped[dict] = mapped_column("metadata", JSONType(), default=dict)

    __table_args__ = (
        Index("idx_sync_logs_connector_started", "connector_id", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<ConnectorSyncLog(connector_id='{self.connector_id}', status='{self.status}')>"
