"""
DocBridge - Database Module
===========================

Models and async session management.
"""

from docbridge.db.models import (
    Base,
    ConnectorInstance,
    ConnectorSyncLog,
    ConnectorSyncState,
    ImportedDocument,
    ProcessingStatus,
    SyncLogStatus,
)
from docbridge.db.database import (
    async_session_context,
    close_db,
    get_async_engine,
    get_async_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "ConnectorInstance",
    "ConnectorSyncLog",
    "ConnectorSyncState",
    "ImportedDocument",
    "ProcessingStatus",
    "SyncLogStatus",
    "async_session_context",
    "close_db",
    "get_async_engine",
    "get_async_session_factory",
    "init_db",
]
