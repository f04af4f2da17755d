"""
DocBridge - Base Connector
==========================

Abstract base class and value types shared by all content connectors.

Provides a unified interface for:
- Authentication and connection testing
- Sync into the imported-document store
- File listing and download
- Webhook dispatch (push-based vendors)
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar, Union

import httpx
import structlog
from pydantic import BaseModel, Field

from docbridge.core.config import settings
from docbridge.services.base import (
    AuthenticationException,
    BaseService,
    NotAuthenticatedException,
    NotFoundException,
    PermissionException,
    ProviderException,
    RateLimitException,
    UnauthorizedException,
    ValidationException,
)
from docbridge.services.connectors.storage import (
    ImportedDocumentStore,
    StoredDocument,
    StoreOutcome,
    encode_binary,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConnectorType(str, Enum):
    """Supported connector types."""
    GOOGLE_DRIVE = "google_drive"
    SHAREPOINT = "sharepoint"
    ONEDRIVE = "onedrive"
    NOTION = "notion"
    ZOOM = "zoom"
    MICROSOFT_TEAMS = "microsoft_teams"
    FILE_UPLOAD = "file_upload"
    URL_IMPORT = "url_import"


# =============================================================================
# Value Types
# =============================================================================

class ConnectorCredentials(BaseModel):
    """OAuth tokens plus vendor-specific fields."""
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[List[str]] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    def apply_refresh(self, refreshed: "ConnectorCredentials") -> "ConnectorCredentials":
        """Overlay a refresh-grant response, keeping fields the vendor left out."""
        return refreshed.model_copy(update={
            "refresh_token": refreshed.refresh_token or self.refresh_token,
            "scope": refreshed.scope or self.scope,
            "extra": {**self.extra, **refreshed.extra},
        })

    def to_storage(self) -> Dict[str, Any]:
        """Serialize for the connector_instances.credentials column."""
        return self.model_dump(mode="json")

    @classmethod
    def from_storage(cls, data: Optional[Dict[str, Any]]) -> "ConnectorCredentials":
        return cls.model_validate(data or {})


class ConnectorConfig(BaseModel):
    """Configuration shared by every connector instance."""
    org_id: Optional[str] = None
    connector_id: Optional[str] = None
    max_file_size_bytes: int = Field(
        default_factory=lambda: settings.CONNECTOR_MAX_FILE_SIZE_MB * 1024 * 1024
    )
    page_size: int = Field(default_factory=lambda: settings.CONNECTOR_PAGE_SIZE)
    batch_size: int = Field(default_factory=lambda: settings.CONNECTOR_SYNC_BATCH_SIZE)


class AuthResult(BaseModel):
    """Outcome of authenticate()."""
    success: bool
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    error: Optional[str] = None
    auth_url: Optional[str] = None


class TestResult(BaseModel):
    """Outcome of test_connection()."""
    __test__ = False  # not a pytest class

    success: bool
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SyncOptions(BaseModel):
    """Input parameters for sync()."""
    full_sync: bool = False
    since: Optional[datetime] = None
    limit: Optional[int] = None
    file_types: Optional[List[str]] = None
    paths: Optional[List[str]] = None


class ListOptions(BaseModel):
    """Input parameters for list_files()."""
    limit: Optional[int] = None
    offset: int = 0
    folder_id: Optional[str] = None
    since: Optional[datetime] = None
    filters: Dict[str, Any] = Field(default_factory=dict)


class SyncError(BaseModel):
    """One failed item inside a sync run."""
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    error: str
    retryable: bool = False


class SyncResult(BaseModel):
    """Counters and per-item errors for one sync() invocation."""
    success: bool = True
    files_processed: int = 0
    files_updated: int = 0
    files_failed: int = 0
    files_deleted: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConnectorFile(BaseModel):
    """Normalized description of a remote file, page or recording."""
    id: str
    name: str
    type: str = "file"
    mime_type: str = "application/octet-stream"
    size: int = 0
    modified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    url: Optional[str] = None
    path: Optional[str] = None
    parent_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FileContent(BaseModel):
    """Downloaded payload."""
    id: str
    title: str
    content: Union[str, bytes]
    mime_type: str
    size: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """Vendor push notification, as forwarded by the HTTP layer."""
    id: str
    type: str
    source: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# Error Classification
# =============================================================================

def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a failed item is worth retrying later.

    Network errors, timeouts, 5xx and rate limits are transient.
    Missing items, oversize or unsupported input and auth failures are not.
    """
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(error, RateLimitException):
        return True
    if isinstance(error, (
        NotFoundException,
        ValidationException,
        PermissionException,
        NotAuthenticatedException,
        AuthenticationException,
    )):
        return False
    if isinstance(error, ProviderException):
        if error.status_code is None:
            return True
        return error.status_code >= 500 or error.status_code == 429
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    return False


def describe_error(error: BaseException) -> str:
    """User-facing message for service and transport errors alike."""
    return getattr(error, "message", None) or str(error) or error.__class__.__name__


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str):
            return data.get("error_description") or error
        if data.get("message"):
            return data["message"]
    return response.reason_phrase


def raise_for_status(
    response: httpx.Response,
    provider: str,
    resource_type: str = "Item",
    resource_id: Optional[str] = None,
) -> None:
    """Translate a vendor HTTP error into the service exception hierarchy."""
    if response.is_success:
        return

    status = response.status_code
    message = _error_message(response)

    if status == 401:
        raise UnauthorizedException(provider, f"{status}: {message}")
    if status == 404:
        raise NotFoundException(resource_type, resource_id or str(response.request.url))
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitException(
            f"{provider} rate limit exceeded",
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    raise ProviderException(provider, f"{status}: {message}", status_code=status)


# =============================================================================
# Connector Contract
# =============================================================================

class Connector(BaseService, ABC):
    """
    Abstract base class for content connectors.

    All connectors must implement:
    - authenticate(): Validate credentials or exchange an authorization code
    - test_connection(): Lightweight, repeatable health check
    - sync(): Import content into the imported-document store
    - list_files(): Flattened, paginated file listing
    - download_file(): Fetch one item's content

    Push-based connectors additionally override handle_webhook().
    """

    connector_type: ConnectorType = None
    display_name: str = "Base Connector"
    description: str = "Abstract base connector"
    icon: str = "link"

    requires_oauth: bool = True
    supports_webhooks: bool = False

    config_class = ConnectorConfig

    # Fraction of processed items allowed to fail while still reporting success
    failure_tolerance: float = 0.0

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[ConnectorConfig] = None,
        *,
        document_store: Optional[ImportedDocumentStore] = None,
        organization_id=None,
        user_id=None,
    ):
        config = config or self.config_class()
        super().__init__(organization_id or config.org_id, user_id)
        self.config = config
        self._credentials = credentials
        self._document_store = document_store
        self._authenticated = False

    @property
    def credentials(self) -> Optional[ConnectorCredentials]:
        return self._credentials

    @property
    def connector_id(self) -> Optional[str]:
        return self.config.connector_id

    @property
    def is_authenticated(self) -> bool:
        """Check if connector is authenticated."""
        return self._authenticated

    @property
    def document_store(self) -> ImportedDocumentStore:
        if self._document_store is None:
            self._document_store = ImportedDocumentStore(organization_id=self.organization_id)
        return self._document_store

    # -------------------------------------------------------------------------
    # Required operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        """
        Authenticate with the data source.

        OAuth connectors accept either an authorization code in
        credentials.extra["code"] or existing tokens.
        """

    @abstractmethod
    async def test_connection(self) -> TestResult:
        """Check that the connector can reach its source."""

    @abstractmethod
    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Import content from the source.

        Per-item failures are reported in the result. Raises only when the
        sync cannot start at all.
        """

    @abstractmethod
    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        """List files, paging internally, capped by options.limit."""

    @abstractmethod
    async def download_file(self, file_id: str) -> FileContent:
        """
        Download one item.

        Raises:
            NotFoundException: if the id does not resolve
            NotAuthenticatedException: if no valid token can be obtained
        """

    # -------------------------------------------------------------------------
    # Optional operations
    # -------------------------------------------------------------------------

    async def handle_webhook(self, event: WebhookEvent) -> None:
        """Connectors without push support ignore webhook events."""
        self.log_debug("Webhook ignored", connector=self.connector_type, event_type=event.type)

    async def refresh_credentials(
        self,
        credentials: Optional[ConnectorCredentials] = None,
    ) -> ConnectorCredentials:
        raise AuthenticationException(f"{self.display_name} does not support credential refresh")

    def get_authorization_url(self, state: Optional[str] = None) -> Optional[str]:
        """
        Get OAuth authorization URL for connectors that use OAuth.

        Returns:
            Authorization URL or None if not OAuth-based
        """
        return None

    async def aclose(self) -> None:
        """Release network clients held by the connector."""

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    # -------------------------------------------------------------------------
    # Sync helpers
    # -------------------------------------------------------------------------

    def _record_failure(
        self,
        result: SyncResult,
        error: BaseException,
        file_id: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> None:
        retryable = is_retryable(error)
        result.files_failed += 1
        result.errors.append(SyncError(
            file_id=file_id,
            file_name=file_name,
            error=str(error),
            retryable=retryable,
        ))
        self.log_warning(
            "Failed to sync item",
            connector=self.connector_type,
            file_id=file_id,
            error=str(error),
            retryable=retryable,
        )

    @staticmethod
    def _count_outcomes(
        result: SyncResult,
        outcome: Union[None, StoreOutcome, Sequence[StoreOutcome]],
    ) -> None:
        if outcome is None:
            return
        outcomes = [outcome] if isinstance(outcome, StoreOutcome) else outcome
        result.files_updated += sum(
            1 for o in outcomes if o in (StoreOutcome.CREATED, StoreOutcome.UPDATED)
        )

    async def _run_in_batches(
        self,
        result: SyncResult,
        items: Iterable[T],
        handler: Callable[[T], Awaitable[Any]],
        identify: Callable[[T], tuple],
    ) -> None:
        """
        Process items in fixed-width concurrent batches.

        Each batch is joined before the next starts. A failing item is
        recorded in the result and never aborts its batch.
        """

        async def guarded(item: T) -> None:
            file_id, file_name = identify(item)
            result.files_processed += 1
            try:
                outcome = await handler(item)
                self._count_outcomes(result, outcome)
            except Exception as e:
                self._record_failure(result, e, file_id=file_id, file_name=file_name)

        items = list(items)
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(items), batch_size):
            batch = items[start:start + batch_size]
            await asyncio.gather(*(guarded(item) for item in batch))

    def _build_result(self, result: SyncResult) -> SyncResult:
        """Apply the connector's failure tolerance to the result."""
        if self.failure_tolerance > 0:
            result.success = (
                result.files_failed == 0
                or result.files_failed < result.files_processed * self.failure_tolerance
            )
        else:
            result.success = result.files_failed == 0
        return result

    async def _store(
        self,
        external_id: str,
        title: str,
        content: str,
        file_type: Optional[str],
        file_size: int = 0,
        external_url: Optional[str] = None,
        source_metadata: Optional[Dict[str, Any]] = None,
    ) -> StoreOutcome:
        return await self.document_store.store(StoredDocument(
            connector_id=self.connector_id,
            org_id=str(self.organization_id) if self.organization_id else None,
            external_id=external_id,
            title=title,
            content=content,
            file_type=file_type,
            file_size=file_size,
            external_url=external_url,
            source_metadata=source_metadata or {},
        ))

    @staticmethod
    def _as_text(content: Union[str, bytes], mime_type: Optional[str]) -> str:
        """Text payloads are stored decoded; anything else as base64."""
        if isinstance(content, str):
            return content
        if mime_type and (mime_type.startswith("text/") or mime_type == "application/json"):
            return content.decode("utf-8", errors="replace")
        return encode_binary(content)

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        return datetime.fromisoformat(value.replace("Z", "+00:00"))

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Get JSON schema for connector configuration.
        """
        return {
            "type": "object",
            "properties": {
                "max_file_size_bytes": {
                    "type": "integer",
                    "default": settings.CONNECTOR_MAX_FILE_SIZE_MB * 1024 * 1024,
                    "description": "Skip files larger than this",
                },
                "page_size": {
                    "type": "integer",
                    "minimum": 1,
                    "default": settings.CONNECTOR_PAGE_SIZE,
                    "description": "Items requested per vendor page",
                },
            },
        }

    @classmethod
    def get_credentials_schema(cls) -> Dict[str, Any]:
        """
        Get JSON schema for connector credentials.
        """
        return {
            "type": "object",
            "properties": {},
        }
