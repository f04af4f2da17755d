"""
DocBridge - Connector Registry
==============================

Central registry for all available connectors.
Maps ConnectorType values to implementations, exposes the static
capability table, and builds connector instances.
"""

import importlib
from typing import Any, Dict, List, Optional, Type, Union

import structlog
from pydantic import BaseModel

from docbridge.services.base import ServiceException
from docbridge.services.connectors.base import (
    Connector,
    ConnectorConfig,
    ConnectorCredentials,
    ConnectorType,
)

logger = structlog.get_logger(__name__)


class UnknownConnectorTypeError(ServiceException):
    """Raised when a connector type is not a member or has no implementation."""

    def __init__(self, connector_type: Any):
        super().__init__(
            f"Unknown connector type: {connector_type}",
            code="UNKNOWN_CONNECTOR_TYPE",
            details={"connector_type": str(connector_type)},
        )


class ConnectorCapabilities(BaseModel):
    requires_oauth: bool
    supports_webhooks: bool
    supports_publish: bool


CONNECTOR_CAPABILITIES: Dict[ConnectorType, ConnectorCapabilities] = {
    ConnectorType.GOOGLE_DRIVE: ConnectorCapabilities(requires_oauth=True, supports_webhooks=False, supports_publish=True),
    ConnectorType.SHAREPOINT: ConnectorCapabilities(requires_oauth=True, supports_webhooks=False, supports_publish=True),
    ConnectorType.ONEDRIVE: ConnectorCapabilities(requires_oauth=True, supports_webhooks=False, supports_publish=True),
    ConnectorType.NOTION: ConnectorCapabilities(requires_oauth=True, supports_webhooks=False, supports_publish=False),
    ConnectorType.ZOOM: ConnectorCapabilities(requires_oauth=True, supports_webhooks=True, supports_publish=False),
    ConnectorType.MICROSOFT_TEAMS: ConnectorCapabilities(requires_oauth=True, supports_webhooks=True, supports_publish=False),
    ConnectorType.FILE_UPLOAD: ConnectorCapabilities(requires_oauth=False, supports_webhooks=False, supports_publish=False),
    ConnectorType.URL_IMPORT: ConnectorCapabilities(requires_oauth=False, supports_webhooks=False, supports_publish=False),
}


def _coerce_type(connector_type: Union[ConnectorType, str]) -> ConnectorType:
    if isinstance(connector_type, ConnectorType):
        return connector_type
    try:
        return ConnectorType(connector_type)
    except ValueError:
        raise UnknownConnectorTypeError(connector_type)


def get_capabilities(connector_type: Union[ConnectorType, str]) -> ConnectorCapabilities:
    connector_type = _coerce_type(connector_type)
    if connector_type not in CONNECTOR_CAPABILITIES:
        raise UnknownConnectorTypeError(connector_type.value)
    return CONNECTOR_CAPABILITIES[connector_type]


def requires_oauth(connector_type: Union[ConnectorType, str]) -> bool:
    return get_capabilities(connector_type).requires_oauth


def supports_webhooks(connector_type: Union[ConnectorType, str]) -> bool:
    return get_capabilities(connector_type).supports_webhooks


def supports_publish(connector_type: Union[ConnectorType, str]) -> bool:
    return get_capabilities(connector_type).supports_publish


class ConnectorRegistry:
    """
    Registry for connector types.

    Maintains a mapping of connector types to their implementations
    and provides factory methods for instantiation.
    """

    _connectors: Dict[ConnectorType, Type[Connector]] = {}

    @classmethod
    def register(cls, connector_type: ConnectorType):
        """
        Decorator to register a connector class.

        Usage:
            @ConnectorRegistry.register(ConnectorType.GOOGLE_DRIVE)
            class GoogleDriveConnector(OAuthConnector):
                ...
        """
        def decorator(connector_class: Type[Connector]):
            cls._connectors[connector_type] = connector_class
            logger.debug("Registered connector", connector_type=connector_type.value)
            return connector_class
        return decorator

    @classmethod
    def get(cls, connector_type: Union[ConnectorType, str]) -> Type[Connector]:
        """
        Get a connector class by type.

        Raises:
            UnknownConnectorTypeError: not a ConnectorType member, or nothing registered
        """
        connector_type = _coerce_type(connector_type)
        connector_class = cls._connectors.get(connector_type)
        if connector_class is None:
            raise UnknownConnectorTypeError(connector_type.value)
        return connector_class

    @classmethod
    def is_registered(cls, connector_type: Union[ConnectorType, str]) -> bool:
        try:
            cls.get(connector_type)
        except UnknownConnectorTypeError:
            return False
        return True

    @classmethod
    def list_all(cls) -> List[Dict[str, Any]]:
        """
        List all registered connectors with their metadata.

        Returns:
            List of connector info dicts
        """
        connectors = []

        for conn_type, conn_class in cls._connectors.items():
            capabilities = CONNECTOR_CAPABILITIES[conn_type]
            connectors.append({
                "type": conn_type.value,
                "name": conn_class.display_name,
                "description": conn_class.description,
                "icon": conn_class.icon,
                "requires_oauth": capabilities.requires_oauth,
                "supports_webhooks": capabilities.supports_webhooks,
                "supports_publish": capabilities.supports_publish,
                "config_schema": conn_class.get_config_schema(),
                "credentials_schema": conn_class.get_credentials_schema(),
            })

        return connectors

    @classmethod
    def create(
        cls,
        connector_type: Union[ConnectorType, str],
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[Union[ConnectorConfig, Dict[str, Any]]] = None,
        **kwargs,
    ) -> Connector:
        """
        Create a connector instance.

        Args:
            connector_type: Type of connector
            credentials: Tokens for OAuth connectors
            config: Per-connector config model, or a dict validated into it
            **kwargs: Passed through (organization_id, client, blob_storage, ...)

        Returns:
            Connector instance
        """
        connector_class = cls.get(connector_type)

        if isinstance(config, dict):
            config = connector_class.config_class.model_validate(config)

        return connector_class(credentials, config, **kwargs)


def get_connector(
    connector_type: str,
    credentials: Optional[Dict[str, Any]] = None,
    config: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> Connector:
    """
    Convenience function to create a connector from stored (dict) values.
    """
    return ConnectorRegistry.create(
        connector_type,
        ConnectorCredentials.from_storage(credentials),
        config or {},
        **kwargs,
    )


BUILTIN_CONNECTOR_MODULES = [
    "docbridge.services.connectors.google_drive",
    "docbridge.services.connectors.sharepoint",
    "docbridge.services.connectors.notion",
    "docbridge.services.connectors.zoom",
    "docbridge.services.connectors.microsoft_teams",
    "docbridge.services.connectors.file_upload",
    "docbridge.services.connectors.url_import",
]


def _register_builtin_connectors():
    """Import and register all built-in connectors."""
    for module_name in BUILTIN_CONNECTOR_MODULES:
        importlib.import_module(module_name)


# Register connectors on module load
_register_builtin_connectors()
