"""
DocBridge - OAuth Connector Base
================================

Common plumbing for connectors that call a vendor REST API with an OAuth
bearer token: a shared httpx client, token refresh through TokenManager,
and error translation for every response.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from docbridge.services.base import AuthenticationException
from docbridge.services.connectors.base import (
    Connector,
    ConnectorConfig,
    ConnectorCredentials,
    raise_for_status,
)
from docbridge.services.connectors.storage import CredentialStore, ImportedDocumentStore
from docbridge.services.connectors.token_manager import RefreshFunction, TokenManager

logger = structlog.get_logger(__name__)


class OAuthConnector(Connector):
    """
    Base for connectors authenticated with OAuth bearer tokens.

    Subclasses set api_base_url / provider_name and implement
    refresh_tokens() (or leave it unimplemented for non-expiring tokens).
    """

    api_base_url: str = ""
    provider_name: str = "oauth"
    supports_token_refresh: bool = True

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[ConnectorConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        token_manager: Optional[TokenManager] = None,
        credential_store: Optional[CredentialStore] = None,
        document_store: Optional[ImportedDocumentStore] = None,
        organization_id=None,
        user_id=None,
    ):
        super().__init__(
            credentials,
            config,
            document_store=document_store,
            organization_id=organization_id,
            user_id=user_id,
        )
        self._client = client
        self.token_manager = token_manager or TokenManager(
            credentials or ConnectorCredentials(),
            refresh_fn=self._refresh_function(),
            connector_id=self.config.connector_id,
            credential_store=credential_store,
            provider=self.provider_name,
        )

    @property
    def credentials(self) -> ConnectorCredentials:
        return self.token_manager.credentials

    def _set_credentials(self, credentials: ConnectorCredentials) -> None:
        self.token_manager.credentials = credentials

    def _refresh_function(self) -> Optional[RefreshFunction]:
        return self.refresh_tokens if self.supports_token_refresh else None

    async def refresh_tokens(self, refresh_token: str) -> ConnectorCredentials:
        """Vendor refresh-token grant."""
        raise NotImplementedError

    async def refresh_credentials(
        self,
        credentials: Optional[ConnectorCredentials] = None,
    ) -> ConnectorCredentials:
        credentials = credentials or self.credentials
        if not self.supports_token_refresh:
            raise AuthenticationException(f"{self.display_name} tokens do not expire and cannot be refreshed")
        if not credentials.refresh_token:
            raise AuthenticationException("No refresh token available")
        refreshed = await self.refresh_tokens(credentials.refresh_token)
        return credentials.apply_refresh(refreshed)

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base_url,
                timeout=30.0,
                follow_redirects=True,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        resource_type: str = "Item",
        resource_id: Optional[str] = None,
    ) -> httpx.Response:
        """Authenticated request; 401 triggers one refresh-and-retry."""

        async def call(token: str) -> httpx.Response:
            response = await self.client.request(
                method,
                url,
                params=params,
                json=json,
                content=content,
                headers={
                    **self._default_headers(),
                    "Authorization": f"Bearer {token}",
                    **(headers or {}),
                },
            )
            raise_for_status(response, self.provider_name, resource_type, resource_id)
            return response

        return await self.token_manager.with_token_refresh(call)

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
        response = await self._request("GET", url, params=params, **kwargs)
        return response.json()

    async def _download_bytes(self, url: str, resource_id: Optional[str] = None) -> bytes:
        response = await self._request("GET", url, resource_type="File", resource_id=resource_id)
        return response.content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
