"""
DocBridge - Connector Registry Tests
====================================

Tests for connector lookup, the capability table and construction from
stored values.
"""

import pytest

from docbridge.services.base import AuthenticationException
from docbridge.services.blob_storage import InMemoryBlobStorage
from docbridge.services.connectors import (
    CONNECTOR_CAPABILITIES,
    ConnectorRegistry,
    ConnectorType,
    FileUploadConnector,
    GoogleDriveConnector,
    OneDriveConnector,
    SharePointConnector,
    UnknownConnectorTypeError,
    URLImportConnector,
    get_capabilities,
    get_connector,
    requires_oauth,
    supports_publish,
    supports_webhooks,
)


class TestLookup:
    """Tests for ConnectorRegistry.get."""

    def test_every_type_is_registered(self):
        for connector_type in ConnectorType:
            assert ConnectorRegistry.is_registered(connector_type)

    def test_lookup_by_value(self):
        assert ConnectorRegistry.get("google_drive") is GoogleDriveConnector
        assert ConnectorRegistry.get(ConnectorType.ONEDRIVE) is OneDriveConnector

    def test_unknown_type(self):
        with pytest.raises(UnknownConnectorTypeError) as exc_info:
            ConnectorRegistry.get("dropbox")

        assert exc_info.value.message == "Unknown connector type: dropbox"
        assert exc_info.value.code == "UNKNOWN_CONNECTOR_TYPE"
        assert ConnectorRegistry.is_registered("dropbox") is False


class TestCapabilities:
    """Tests for the static capability table."""

    def test_table_covers_every_type(self):
        assert set(CONNECTOR_CAPABILITIES) == set(ConnectorType)

    def test_oauth_connectors(self):
        assert requires_oauth("google_drive") is True
        assert requires_oauth(ConnectorType.NOTION) is True
        assert requires_oauth("file_upload") is False
        assert requires_oauth("url_import") is False

    def test_webhook_connectors(self):
        webhook_types = {t for t in ConnectorType if supports_webhooks(t)}

        assert webhook_types == {ConnectorType.ZOOM, ConnectorType.MICROSOFT_TEAMS}

    def test_publish_connectors(self):
        publish_types = {t for t in ConnectorType if supports_publish(t)}

        assert publish_types == {ConnectorType.GOOGLE_DRIVE, ConnectorType.SHAREPOINT, ConnectorType.ONEDRIVE}

    def test_capabilities_match_classes(self):
        for connector_type in ConnectorType:
            connector_class = ConnectorRegistry.get(connector_type)
            capabilities = get_capabilities(connector_type)

            assert connector_class.requires_oauth == capabilities.requires_oauth
            assert connector_class.supports_webhooks == capabilities.supports_webhooks

    def test_unknown_capabilities(self):
        with pytest.raises(UnknownConnectorTypeError):
            get_capabilities("box")


class TestCreate:
    """Tests for building connectors."""

    def test_dict_config_is_validated(self):
        connector = ConnectorRegistry.create(
            ConnectorType.SHAREPOINT,
            None,
            {"site_id": "site-1", "connector_id": "conn-1", "org_id": "org-1"},
        )

        assert isinstance(connector, SharePointConnector)
        assert connector.drive_path == "/sites/site-1/drive"
        assert connector.connector_id == "conn-1"
        assert connector.organization_id == "org-1"

    def test_get_connector_from_stored_values(self):
        connector = get_connector(
            "url_import",
            None,
            {"batch_id": "batch-7"},
            blob_storage=InMemoryBlobStorage(),
        )

        assert isinstance(connector, URLImportConnector)
        assert connector.config.batch_id == "batch-7"

    def test_stored_credentials_are_parsed(self):
        connector = get_connector(
            "google_drive",
            {"access_token": "a", "refresh_token": "r", "expires_at": "2030-01-01T00:00:00Z"},
        )

        assert connector.credentials.access_token == "a"
        assert connector.credentials.expires_at.year == 2030

    def test_kwargs_are_passed_through(self):
        storage = InMemoryBlobStorage()

        connector = ConnectorRegistry.create("file_upload", blob_storage=storage)

        assert isinstance(connector, FileUploadConnector)
        assert connector.blob_storage is storage

    def test_constructor_errors_propagate(self):
        with pytest.raises(AuthenticationException):
            get_connector("notion", {})


class TestListAll:
    """Tests for the connector catalogue."""

    def test_catalogue_entries(self):
        entries = {entry["type"]: entry for entry in ConnectorRegistry.list_all()}

        assert set(entries) == {t.value for t in ConnectorType}
        zoom = entries["zoom"]
        assert zoom["name"] == "Zoom Meetings"
        assert zoom["supports_webhooks"] is True
        assert zoom["config_schema"]["properties"]["sync_window_days"]["default"] == 30
        assert entries["notion"]["credentials_schema"]["required"] == ["access_token"]
