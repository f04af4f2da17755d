"""
DocBridge - Connector Manager
=============================

Orchestration over stored connector instances:
- Create (authenticate + test before saving), update, delete
- Run a sync with status tracking and a sync log row
- Test, list files, refresh credentials
- Per-organization statistics
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from docbridge.db.database import get_async_session_factory
from docbridge.db.models import (
    ConnectorInstance,
    ConnectorSyncLog,
    ConnectorSyncState,
    SyncLogStatus,
)
from docbridge.services.base import BaseService, NotFoundException, ValidationException
from docbridge.services.connectors.base import (
    Connector,
    ConnectorCredentials,
    ConnectorFile,
    ConnectorType,
    ListOptions,
    SyncOptions,
    SyncResult,
    TestResult,
)
from docbridge.services.connectors.registry import ConnectorRegistry
from docbridge.services.connectors.storage import ImportedDocumentStore, SQLCredentialStore

logger = structlog.get_logger(__name__)

ConnectorFactory = Callable[..., Connector]


class ConnectorStats(BaseModel):
    """Connector counts for one organization."""
    total: int = 0
    active: int = 0
    syncing: int = 0
    error: int = 0
    last_sync_at: Optional[datetime] = None
    document_count: int = 0


def sync_log_status(result: SyncResult) -> SyncLogStatus:
    """Successful runs with failed items are partial."""
    if not result.success:
        return SyncLogStatus.FAILED
    if result.files_failed > 0:
        return SyncLogStatus.PARTIAL
    return SyncLogStatus.SUCCESS


class ConnectorManager(BaseService):
    """
    High-level API over connector_instances.

    Adapters are built through the registry with the stored credentials
    and settings; refreshed tokens are written back through a
    SQLCredentialStore bound to the same session factory.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        document_store: Optional[ImportedDocumentStore] = None,
        connector_factory: Optional[ConnectorFactory] = None,
        organization_id=None,
        user_id=None,
    ):
        super().__init__(organization_id, user_id)
        self._session_factory = session_factory
        self.document_store = document_store or ImportedDocumentStore(session_factory=session_factory)
        self.credential_store = SQLCredentialStore(session_factory=session_factory)
        self._connector_factory = connector_factory or ConnectorRegistry.create

    def _factory(self) -> async_sessionmaker:
        return self._session_factory or get_async_session_factory()

    # -------------------------------------------------------------------------
    # Adapter construction
    # -------------------------------------------------------------------------

    def _build(
        self,
        connector_type: Union[ConnectorType, str],
        credentials: Optional[ConnectorCredentials],
        settings: Optional[Dict[str, Any]],
        org_id: Optional[str],
        connector_id: Optional[str] = None,
    ) -> Connector:
        config = {**(settings or {}), "org_id": org_id, "connector_id": connector_id}
        return self._connector_factory(
            connector_type,
            credentials,
            config,
            document_store=self.document_store,
            credential_store=self.credential_store,
            organization_id=org_id,
            user_id=self.user_id,
        )

    def _build_for(self, instance: ConnectorInstance) -> Connector:
        return self._build(
            instance.connector_type,
            ConnectorCredentials.from_storage(instance.credentials),
            instance.settings,
            instance.org_id,
            str(instance.id),
        )

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    async def create_connector(
        self,
        org_id: str,
        connector_type: Union[ConnectorType, str],
        name: Optional[str] = None,
        credentials: Optional[ConnectorCredentials] = None,
        settings: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ConnectorInstance:
        """
        Validate and save a new connector.

        The adapter must authenticate and pass its connection test before
        the row is written. Tokens obtained from a code exchange are the
        ones stored.

        Raises:
            ValidationException: authentication or connection test failed
            UnknownConnectorTypeError: connector_type is not registered
        """
        credentials = credentials or ConnectorCredentials()
        connector = self._build(connector_type, credentials, settings, org_id)

        async with connector:
            auth = await connector.authenticate(credentials)
            if not auth.success:
                raise ValidationException(auth.error or "Authentication failed", field="credentials")

            test = await connector.test_connection()
            if not test.success:
                raise ValidationException(test.message or "Connection test failed")

            stored_credentials = (connector.credentials or credentials).to_storage()

        instance = ConnectorInstance(
            org_id=org_id,
            connector_type=connector.connector_type.value,
            name=name or connector.display_name,
            credentials=stored_credentials,
            settings=settings or {},
            sync_status=ConnectorSyncState.IDLE.value,
            is_active=True,
            created_by=user_id or (str(self.user_id) if self.user_id else None),
        )

        async with self._factory()() as session:
            session.add(instance)
            await session.commit()
            await session.refresh(instance)

        self.log_info(
            "Connector created",
            connector_id=str(instance.id),
            connector_type=instance.connector_type,
            org_id=org_id,
        )
        return instance

    async def get_connector(self, connector_id: Union[str, uuid.UUID]) -> ConnectorInstance:
        instance_id = self.validate_uuid(connector_id, "connector_id")
        async with self._factory()() as session:
            instance = await session.get(ConnectorInstance, instance_id)
        if instance is None:
            raise NotFoundException("Connector", str(connector_id))
        return instance

    async def list_connectors(
        self,
        org_id: str,
        connector_type: Optional[Union[ConnectorType, str]] = None,
        active_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ConnectorInstance]:
        query = select(ConnectorInstance).where(ConnectorInstance.org_id == org_id)
        if connector_type is not None:
            value = connector_type.value if isinstance(connector_type, ConnectorType) else connector_type
            query = query.where(ConnectorInstance.connector_type == value)
        if active_only:
            query = query.where(ConnectorInstance.is_active.is_(True))

        query = query.order_by(ConnectorInstance.created_at.desc()).offset(offset)
        if limit:
            query = query.limit(limit)

        async with self._factory()() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_connector(
        self,
        connector_id: Union[str, uuid.UUID],
        name: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
        credentials: Optional[ConnectorCredentials] = None,
    ) -> ConnectorInstance:
        """
        Update a connector. New credentials are authenticated before saving.

        Raises:
            NotFoundException: unknown connector
            ValidationException: the new credentials were rejected
        """
        instance = await self.get_connector(connector_id)

        new_credentials = None
        if credentials is not None:
            connector = self._build(
                instance.connector_type,
                credentials,
                settings if settings is not None else instance.settings,
                instance.org_id,
                str(instance.id),
            )
            async with connector:
                auth = await connector.authenticate(credentials)
                if not auth.success:
                    raise ValidationException(auth.error or "Credential validation failed", field="credentials")
                new_credentials = (connector.credentials or credentials).to_storage()

        async with self._factory()() as session:
            instance = await session.get(ConnectorInstance, instance.id)
            if name:
                instance.name = name
            if settings is not None:
                instance.settings = settings
            if is_active is not None:
                instance.is_active = is_active
            if new_credentials is not None:
                instance.credentials = new_credentials
                instance.credentials_version += 1
                instance.credentials_updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(instance)

        self.log_info("Connector updated", connector_id=str(instance.id))
        return instance

    async def delete_connector(self, connector_id: Union[str, uuid.UUID]) -> int:
        """Delete a connector and its imported documents; returns documents removed."""
        instance = await self.get_connector(connector_id)
        removed = await self.document_store.delete_for_connector(str(instance.id))

        async with self._factory()() as session:
            instance = await session.get(ConnectorInstance, instance.id)
            if instance is not None:
                await session.delete(instance)
            await session.commit()

        self.log_info("Connector deleted", connector_id=str(connector_id), documents_deleted=removed)
        return removed

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def _set_sync_state(self, instance_id: uuid.UUID, **values) -> None:
        async with self._factory()() as session:
            instance = await session.get(ConnectorInstance, instance_id)
            for key, value in values.items():
                setattr(instance, key, value)
            await session.commit()

    async def _open_log(self, instance: ConnectorInstance, sync_type: str, started_at: datetime) -> uuid.UUID:
        log = ConnectorSyncLog(
            connector_id=instance.id,
            org_id=instance.org_id,
            sync_type=sync_type,
            status=SyncLogStatus.RUNNING.value,
            started_at=started_at,
        )
        async with self._factory()() as session:
            session.add(log)
            await session.commit()
            return log.id

    async def _close_log(self, log_id: uuid.UUID, status: SyncLogStatus, duration_ms: int, **values) -> None:
        async with self._factory()() as session:
            log = await session.get(ConnectorSyncLog, log_id)
            log.status = status.value
            log.completed_at = datetime.now(timezone.utc)
            log.duration_ms = duration_ms
            for key, value in values.items():
                setattr(log, key, value)
            await session.commit()

    async def sync_connector(
        self,
        connector_id: Union[str, uuid.UUID],
        options: Optional[SyncOptions] = None,
        sync_type: str = "manual",
    ) -> SyncResult:
        """
        Run a sync and record it.

        The connector is marked syncing, a running log row is opened, and
        both are closed with the outcome. An exception from the adapter
        leaves the connector in the error state and is re-raised.

        Raises:
            NotFoundException: unknown connector
            ValidationException: connector is inactive
        """
        instance = await self.get_connector(connector_id)
        if not instance.is_active:
            raise ValidationException("Connector is not active")

        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        await self._set_sync_state(instance.id, sync_status=ConnectorSyncState.SYNCING.value)
        log_id = await self._open_log(instance, sync_type, started_at)

        self.log_info("Connector sync started", connector_id=str(instance.id), connector_type=instance.connector_type)

        try:
            async with self._build_for(instance) as connector:
                result = await connector.sync(options or SyncOptions())
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            await self._set_sync_state(
                instance.id,
                sync_status=ConnectorSyncState.ERROR.value,
                sync_error=str(e),
            )
            await self._close_log(log_id, SyncLogStatus.FAILED, duration_ms, error_message=str(e))
            self.log_error("Connector sync failed", error=e, connector_id=str(instance.id))
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        first_error = result.errors[0].error if result.errors else None

        await self._set_sync_state(
            instance.id,
            sync_status=(ConnectorSyncState.IDLE if result.success else ConnectorSyncState.ERROR).value,
            sync_error=None if result.success else first_error,
            last_sync_at=datetime.now(timezone.utc),
        )
        await self._close_log(
            log_id,
            sync_log_status(result),
            duration_ms,
            documents_synced=result.files_processed,
            documents_updated=result.files_updated,
            documents_failed=result.files_failed,
            documents_deleted=result.files_deleted,
            error_message=first_error,
            log_metadata=result.metadata,
        )

        self.log_info(
            "Connector sync completed",
            connector_id=str(instance.id),
            success=result.success,
            files_processed=result.files_processed,
            files_updated=result.files_updated,
            files_failed=result.files_failed,
            duration_ms=duration_ms,
        )
        return result

    async def list_sync_logs(self, connector_id: Union[str, uuid.UUID], limit: int = 20) -> List[ConnectorSyncLog]:
        instance_id = self.validate_uuid(connector_id, "connector_id")
        async with self._factory()() as session:
            result = await session.execute(
                select(ConnectorSyncLog)
                .where(ConnectorSyncLog.connector_id == instance_id)
                .order_by(ConnectorSyncLog.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Adapter passthroughs
    # -------------------------------------------------------------------------

    async def test_connector(self, connector_id: Union[str, uuid.UUID]) -> TestResult:
        instance = await self.get_connector(connector_id)
        async with self._build_for(instance) as connector:
            return await connector.test_connection()

    async def list_connector_files(
        self,
        connector_id: Union[str, uuid.UUID],
        options: Optional[ListOptions] = None,
    ) -> List[ConnectorFile]:
        instance = await self.get_connector(connector_id)
        async with self._build_for(instance) as connector:
            return await connector.list_files(options or ListOptions())

    async def refresh_credentials(self, connector_id: Union[str, uuid.UUID]) -> ConnectorCredentials:
        """
        Force a token refresh and persist the new tokens.

        Raises:
            AuthenticationException: the adapter cannot refresh, or the vendor refused
        """
        instance = await self.get_connector(connector_id)
        async with self._build_for(instance) as connector:
            credentials = await connector.refresh_credentials(
                ConnectorCredentials.from_storage(instance.credentials)
            )

        await self._set_sync_state(
            instance.id,
            credentials=credentials.to_storage(),
            credentials_version=instance.credentials_version + 1,
            credentials_updated_at=datetime.now(timezone.utc),
        )
        self.log_info("Connector credentials refreshed", connector_id=str(instance.id))
        return credentials

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    async def get_stats(self, org_id: str) -> ConnectorStats:
        connectors = await self.list_connectors(org_id)

        sync_dates = [c.last_sync_at for c in connectors if c.last_sync_at is not None]
        return ConnectorStats(
            total=len(connectors),
            active=sum(1 for c in connectors if c.is_active),
            syncing=sum(1 for c in connectors if c.sync_status == ConnectorSyncState.SYNCING.value),
            error=sum(1 for c in connectors if c.sync_status == ConnectorSyncState.ERROR.value),
            last_sync_at=max(sync_dates) if sync_dates else None,
            document_count=await self.document_store.count(org_id=org_id),
        )
