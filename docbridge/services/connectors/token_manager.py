"""
DocBridge - Token Manager
=========================

Shared OAuth token lifecycle for connectors:
- Refresh tokens a safety buffer before they expire
- Persist refreshed tokens before they are used
- Retry exactly once after a forced refresh when a vendor answers 401

Persistence is an optimistic compare-and-swap on the stored access token.
If another process refreshed first, the stored (newer) token is adopted
instead of being overwritten.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from pydantic import BaseModel

from docbridge.core.config import settings
from docbridge.services.base import (
    AuthenticationException,
    ConfigurationException,
    NotAuthenticatedException,
    ProviderException,
    ServiceException,
    UnauthorizedException,
)
from docbridge.services.connectors.base import ConnectorCredentials
from docbridge.services.connectors.storage import CredentialStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RefreshFunction = Callable[[str], Awaitable[ConnectorCredentials]]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_GRAPH_SCOPE = "https://graph.microsoft.com/.default offline_access"
ZOOM_TOKEN_URL = "https://zoom.us/oauth/token"


def expiration_buffer() -> timedelta:
    return timedelta(seconds=settings.TOKEN_EXPIRATION_BUFFER_SECONDS)


# =============================================================================
# Expiry Helpers
# =============================================================================

def _expires_at(credentials: ConnectorCredentials) -> datetime:
    expires_at = credentials.expires_at or EPOCH
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


def is_token_expiring_soon(
    credentials: ConnectorCredentials,
    buffer: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> bool:
    """True when the token expires within the buffer. Missing expiry counts as expired."""
    now = now or datetime.now(timezone.utc)
    buffer = expiration_buffer() if buffer is None else buffer
    return now >= _expires_at(credentials) - buffer


def is_token_expired(credentials: ConnectorCredentials, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return now >= _expires_at(credentials)


def get_time_until_expiration(
    credentials: ConnectorCredentials,
    now: Optional[datetime] = None,
) -> Optional[timedelta]:
    """Remaining lifetime, or None when the token has no recorded expiry."""
    if credentials.expires_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    return _expires_at(credentials) - now


def format_expiration_time(credentials: ConnectorCredentials, now: Optional[datetime] = None) -> str:
    remaining = get_time_until_expiration(credentials, now)
    if remaining is None:
        return "Unknown"
    if remaining.total_seconds() <= 0:
        return "Expired"

    minutes = int(remaining.total_seconds() // 60)
    if minutes < 60:
        return f"in {minutes} minute{'s' if minutes != 1 else ''}"
    hours = minutes // 60
    if hours < 24:
        return f"in {hours} hour{'s' if hours != 1 else ''}"
    days = hours // 24
    return f"in {days} day{'s' if days != 1 else ''}"


class TokenRefreshResult(BaseModel):
    """Outcome of a forced refresh."""
    success: bool
    access_token: Optional[str] = None
    new_credentials: Optional[ConnectorCredentials] = None
    error: Optional[str] = None


# =============================================================================
# Token Manager
# =============================================================================

class TokenManager:
    """
    Single choke point for reading, refreshing and persisting one
    connector's OAuth tokens.

    Args:
        credentials: Current credentials
        refresh_fn: Vendor refresh-token grant; None for non-expiring tokens
        connector_id: Key of the credential row to write back to
        credential_store: Where refreshed tokens are persisted
        buffer: Refresh this long before expiry (default 5 minutes)
        provider: Vendor name for logs and errors
    """

    def __init__(
        self,
        credentials: ConnectorCredentials,
        refresh_fn: Optional[RefreshFunction] = None,
        connector_id: Optional[str] = None,
        credential_store: Optional[CredentialStore] = None,
        buffer: Optional[timedelta] = None,
        provider: str = "oauth",
    ):
        self.credentials = credentials
        self.refresh_fn = refresh_fn
        self.connector_id = connector_id
        self.credential_store = credential_store
        self.buffer = expiration_buffer() if buffer is None else buffer
        self.provider = provider
        self.refresh_count = 0
        self._lock = asyncio.Lock()

    def needs_refresh(self) -> bool:
        if self.refresh_fn is None:
            return False
        return is_token_expiring_soon(self.credentials, self.buffer)

    async def ensure_valid_token(self) -> str:
        """
        Return a usable access token, refreshing first when it is near expiry.

        Raises:
            NotAuthenticatedException: no token, or expired with no refresh token
            AuthenticationException: the vendor refused the refresh
        """
        async with self._lock:
            if not self.credentials.access_token:
                raise NotAuthenticatedException("No access token available")

            if not self.needs_refresh():
                return self.credentials.access_token

            if not self.credentials.refresh_token:
                raise NotAuthenticatedException("Token expired and no refresh token available")

            await self._refresh()
            return self.credentials.access_token

    async def force_refresh(self, rejected_token: Optional[str] = None) -> TokenRefreshResult:
        """
        Refresh regardless of expiry; never raises.

        When rejected_token is given and another caller already replaced it,
        the current token is returned without a second refresh.
        """
        if self.refresh_fn is None:
            return TokenRefreshResult(success=False, error=f"{self.provider} tokens cannot be refreshed")
        if not self.credentials.refresh_token:
            return TokenRefreshResult(success=False, error="No refresh token available")

        try:
            async with self._lock:
                if rejected_token is None or self.credentials.access_token == rejected_token:
                    await self._refresh()
        except ServiceException as e:
            return TokenRefreshResult(success=False, error=e.message)

        return TokenRefreshResult(
            success=True,
            access_token=self.credentials.access_token,
            new_credentials=self.credentials,
        )

    async def with_token_refresh(self, call: Callable[[str], Awaitable[T]]) -> T:
        """
        Run call(access_token); on a 401 refresh once and retry once.

        A second 401 is a hard authentication failure.
        """
        token = await self.ensure_valid_token()
        try:
            return await call(token)
        except UnauthorizedException:
            logger.info("Access token rejected, refreshing", provider=self.provider, connector_id=self.connector_id)

        refreshed = await self.force_refresh(rejected_token=token)
        if not refreshed.success:
            raise AuthenticationException(refreshed.error or "Token refresh failed")

        try:
            return await call(refreshed.access_token)
        except UnauthorizedException as e:
            raise AuthenticationException(
                f"{self.provider} rejected the refreshed token; re-authorization required"
            ) from e

    async def _refresh(self) -> None:
        read_token = self.credentials.access_token
        try:
            new_credentials = await self.refresh_fn(self.credentials.refresh_token)
        except ServiceException as e:
            raise AuthenticationException(f"Token refresh failed: {e.message}") from e
        except httpx.HTTPError as e:
            raise AuthenticationException(f"Token refresh failed: {e}") from e

        self.refresh_count += 1
        new_credentials = self.credentials.apply_refresh(new_credentials)
        await self._persist(read_token, new_credentials)

    async def _persist(self, expected_token: str, new_credentials: ConnectorCredentials) -> None:
        if self.credential_store is None or self.connector_id is None:
            self.credentials = new_credentials
            return

        swapped = await self.credential_store.compare_and_swap(
            self.connector_id, expected_token, new_credentials.to_storage()
        )
        if swapped:
            self.credentials = new_credentials
            logger.info("Refreshed credentials persisted", provider=self.provider, connector_id=self.connector_id)
            return

        stored = await self.credential_store.load(self.connector_id)
        if stored and stored.get("access_token"):
            logger.warning(
                "Credentials refreshed concurrently, adopting stored token",
                provider=self.provider,
                connector_id=self.connector_id,
            )
            self.credentials = ConnectorCredentials.from_storage(stored)
        else:
            self.credentials = new_credentials


# =============================================================================
# Vendor Refresh Grants
# =============================================================================

async def _post_token_request(
    provider: str,
    url: str,
    data: dict,
    client: Optional[httpx.AsyncClient] = None,
    auth: Optional[httpx.Auth] = None,
) -> ConnectorCredentials:
    if client is None:
        async with httpx.AsyncClient(timeout=30.0) as own_client:
            response = await own_client.post(url, data=data, auth=auth)
    else:
        response = await client.post(url, data=data, auth=auth)

    if response.status_code != 200:
        try:
            body = response.json()
            message = body.get("error_description") or body.get("error") or response.text
        except ValueError:
            message = response.text
        raise ProviderException(provider, f"{response.status_code}: {message}", status_code=response.status_code)

    return credentials_from_token_response(response.json())


def credentials_from_token_response(data: dict, **extra) -> ConnectorCredentials:
    """Build credentials from an OAuth2 token endpoint response."""
    expires_in = int(data.get("expires_in") or 3600)
    scope = data.get("scope")
    return ConnectorCredentials(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scope=scope.split() if isinstance(scope, str) else scope,
        extra=extra,
    )


async def refresh_google_token(
    refresh_token: str,
    client: Optional[httpx.AsyncClient] = None,
) -> ConnectorCredentials:
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise ConfigurationException("Google OAuth client is not configured")

    return await _post_token_request("google", GOOGLE_TOKEN_URL, {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "client_secret": settings.GOOGLE_CLIENT_SECRET,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }, client=client)


async def refresh_microsoft_token(
    refresh_token: str,
    tenant_id: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ConnectorCredentials:
    if not settings.MICROSOFT_CLIENT_ID or not settings.MICROSOFT_CLIENT_SECRET:
        raise ConfigurationException("Microsoft OAuth client is not configured")

    tenant = tenant_id or settings.MICROSOFT_TENANT_ID
    return await _post_token_request("microsoft", MICROSOFT_TOKEN_URL.format(tenant=tenant), {
        "client_id": settings.MICROSOFT_CLIENT_ID,
        "client_secret": settings.MICROSOFT_CLIENT_SECRET,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
        "scope": MICROSOFT_GRAPH_SCOPE,
    }, client=client)


async def refresh_zoom_token(
    refresh_token: str,
    client: Optional[httpx.AsyncClient] = None,
) -> ConnectorCredentials:
    if not settings.ZOOM_CLIENT_ID or not settings.ZOOM_CLIENT_SECRET:
        raise ConfigurationException("Zoom OAuth client is not configured")

    return await _post_token_request(
        "zoom",
        ZOOM_TOKEN_URL,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        client=client,
        auth=httpx.BasicAuth(settings.ZOOM_CLIENT_ID, settings.ZOOM_CLIENT_SECRET),
    )


# =============================================================================
# Authorization Code Grants
# =============================================================================

async def exchange_google_code(
    code: str,
    client: Optional[httpx.AsyncClient] = None,
) -> ConnectorCredentials:
    """Exchange a Google authorization code for tokens."""
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise ConfigurationException("Google OAuth client is not configured")

    return await _post_token_request("google", GOOGLE_TOKEN_URL, {
        "code": code,
        "client_id": settings.GOOGLE_CLIENT_ID,
        "client_secret": settings.GOOGLE_CLIENT_SECRET,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "grant_type": "authorization_code",
    }, client=client)


async def exchange_microsoft_code(
    code: str,
    tenant_id: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ConnectorCredentials:
    """Exchange a Microsoft identity platform authorization code for tokens."""
    if not settings.MICROSOFT_CLIENT_ID or not settings.MICROSOFT_CLIENT_SECRET:
        raise ConfigurationException("Microsoft OAuth client is not configured")

    tenant = tenant_id or settings.MICROSOFT_TENANT_ID
    return await _post_token_request("microsoft", MICROSOFT_TOKEN_URL.format(tenant=tenant), {
        "code": code,
        "client_id": settings.MICROSOFT_CLIENT_ID,
        "client_secret": settings.MICROSOFT_CLIENT_SECRET,
        "redirect_uri": settings.MICROSOFT_REDIRECT_URI,
        "grant_type": "authorization_code",
        "scope": MICROSOFT_GRAPH_SCOPE,
    }, client=client)
