"""
DocBridge - Connector Framework
===============================

Connect to external sources and import their content as documents.

Supported Connectors:
- Google Drive
- SharePoint / OneDrive
- Notion
- Zoom (cloud recordings)
- Microsoft Teams (meeting recordings)
- File Upload
- URL Import
"""

from docbridge.services.connectors.base import (
    AuthResult,
    Connector,
    ConnectorConfig,
    ConnectorCredentials,
    ConnectorFile,
    ConnectorType,
    FileContent,
    ListOptions,
    SyncError,
    SyncOptions,
    SyncResult,
    TestResult,
    WebhookEvent,
)
from docbridge.services.connectors.registry import (
    CONNECTOR_CAPABILITIES,
    ConnectorCapabilities,
    ConnectorRegistry,
    UnknownConnectorTypeError,
    get_capabilities,
    get_connector,
    requires_oauth,
    supports_publish,
    supports_webhooks,
)
from docbridge.services.connectors.storage import (
    ImportedDocumentStore,
    InMemoryCredentialStore,
    SQLCredentialStore,
    StoreOutcome,
)
from docbridge.services.connectors.token_manager import TokenManager
from docbridge.services.connectors.manager import ConnectorManager, ConnectorStats
from docbridge.services.connectors.google_drive import GoogleDriveConnector
from docbridge.services.connectors.sharepoint import OneDriveConnector, SharePointConnector
from docbridge.services.connectors.notion import NotionConnector
from docbridge.services.connectors.zoom import ZoomConnector
from docbridge.services.connectors.microsoft_teams import MicrosoftTeamsConnector
from docbridge.services.connectors.file_upload import FileUploadConnector
from docbridge.services.connectors.url_import import URLImportConnector

__all__ = [
    # Base classes
    "AuthResult",
    "Connector",
    "ConnectorConfig",
    "ConnectorCredentials",
    "ConnectorFile",
    "ConnectorType",
    "FileContent",
    "ListOptions",
    "SyncError",
    "SyncOptions",
    "SyncResult",
    "TestResult",
    "WebhookEvent",
    # Registry
    "CONNECTOR_CAPABILITIES",
    "ConnectorCapabilities",
    "ConnectorRegistry",
    "UnknownConnectorTypeError",
    "get_capabilities",
    "get_connector",
    "requires_oauth",
    "supports_publish",
    "supports_webhooks",
    # Storage and tokens
    "ImportedDocumentStore",
    "InMemoryCredentialStore",
    "SQLCredentialStore",
    "StoreOutcome",
    "TokenManager",
    # Orchestration
    "ConnectorManager",
    "ConnectorStats",
    # Connectors
    "GoogleDriveConnector",
    "SharePointConnector",
    "OneDriveConnector",
    "NotionConnector",
    "ZoomConnector",
    "MicrosoftTeamsConnector",
    "FileUploadConnector",
    "URLImportConnector",
]
