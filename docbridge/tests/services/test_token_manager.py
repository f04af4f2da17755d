"""
DocBridge - Token Manager Tests
===============================

Unit tests for token expiry checks, refresh-before-use, the single
401 retry and compare-and-swap persistence of refreshed tokens.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest

from docbridge.services.base import (
    AuthenticationException,
    NotAuthenticatedException,
    ProviderException,
    UnauthorizedException,
)
from docbridge.services.connectors.base import ConnectorCredentials
from docbridge.services.connectors.storage import InMemoryCredentialStore
from docbridge.services.connectors.token_manager import (
    TokenManager,
    format_expiration_time,
    is_token_expired,
    is_token_expiring_soon,
    refresh_microsoft_token,
    refresh_zoom_token,
)


def refreshed(token: str = "access-2") -> ConnectorCredentials:
    return ConnectorCredentials(
        access_token=token,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


# =============================================================================
# Expiry Helpers
# =============================================================================

class TestExpiryHelpers:
    """Tests for the expiry predicates."""

    def test_token_inside_buffer_is_expiring(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        credentials = ConnectorCredentials(access_token="a", expires_at=now + timedelta(minutes=4))

        assert is_token_expiring_soon(credentials, timedelta(minutes=5), now=now)
        assert not is_token_expired(credentials, now=now)

    def test_token_outside_buffer_is_not_expiring(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        credentials = ConnectorCredentials(access_token="a", expires_at=now + timedelta(minutes=6))

        assert not is_token_expiring_soon(credentials, timedelta(minutes=5), now=now)

    def test_missing_expiry_counts_as_expired(self):
        credentials = ConnectorCredentials(access_token="a")

        assert is_token_expiring_soon(credentials)
        assert is_token_expired(credentials)

    def test_naive_expiry_is_treated_as_utc(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        credentials = ConnectorCredentials(access_token="a", expires_at=datetime(2024, 1, 1, 13, 0))

        assert not is_token_expiring_soon(credentials, timedelta(minutes=5), now=now)

    def test_format_expiration_time(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

        assert format_expiration_time(ConnectorCredentials(), now=now) == "Unknown"
        assert format_expiration_time(
            ConnectorCredentials(expires_at=now - timedelta(seconds=1)), now=now
        ) == "Expired"
        assert format_expiration_time(
            ConnectorCredentials(expires_at=now + timedelta(minutes=1, seconds=30)), now=now
        ) == "in 1 minute"
        assert format_expiration_time(
            ConnectorCredentials(expires_at=now + timedelta(hours=3)), now=now
        ) == "in 3 hours"
        assert format_expiration_time(
            ConnectorCredentials(expires_at=now + timedelta(days=2)), now=now
        ) == "in 2 days"


# =============================================================================
# Refresh Before Use
# =============================================================================

class TestEnsureValidToken:
    """Tests for TokenManager.ensure_valid_token."""

    async def test_refreshes_once_inside_buffer(self, expiring_credentials):
        refresh_fn = AsyncMock(return_value=refreshed())
        manager = TokenManager(expiring_credentials, refresh_fn=refresh_fn)

        first = await manager.ensure_valid_token()
        second = await manager.ensure_valid_token()

        assert first == second == "access-2"
        refresh_fn.assert_awaited_once_with("refresh-1")
        assert manager.refresh_count == 1

    async def test_no_refresh_outside_buffer(self, valid_credentials):
        refresh_fn = AsyncMock(return_value=refreshed())
        manager = TokenManager(valid_credentials, refresh_fn=refresh_fn)

        token = await manager.ensure_valid_token()

        assert token == "access-1"
        refresh_fn.assert_not_awaited()

    async def test_keeps_refresh_token_when_vendor_omits_it(self, expiring_credentials):
        manager = TokenManager(expiring_credentials, refresh_fn=AsyncMock(return_value=refreshed()))

        await manager.ensure_valid_token()

        assert manager.credentials.refresh_token == "refresh-1"

    async def test_missing_access_token_raises(self):
        manager = TokenManager(ConnectorCredentials(), refresh_fn=AsyncMock())

        with pytest.raises(NotAuthenticatedException):
            await manager.ensure_valid_token()

    async def test_expired_without_refresh_token_raises(self):
        credentials = ConnectorCredentials(
            access_token="access-1",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        manager = TokenManager(credentials, refresh_fn=AsyncMock())

        with pytest.raises(NotAuthenticatedException):
            await manager.ensure_valid_token()

    async def test_non_expiring_tokens_never_refresh(self):
        manager = TokenManager(ConnectorCredentials(access_token="secret_notion"), refresh_fn=None)

        assert await manager.ensure_valid_token() == "secret_notion"

    async def test_vendor_refusal_is_authentication_error(self, expiring_credentials):
        refresh_fn = AsyncMock(side_effect=ProviderException("google", "400: invalid_grant", status_code=400))
        manager = TokenManager(expiring_credentials, refresh_fn=refresh_fn, provider="google")

        with pytest.raises(AuthenticationException) as exc_info:
            await manager.ensure_valid_token()

        assert "Token refresh failed" in exc_info.value.message


# =============================================================================
# 401 Retry
# =============================================================================

class TestWithTokenRefresh:
    """Tests for the refresh-and-retry wrapper."""

    async def test_retries_once_after_401(self, valid_credentials):
        refresh_fn = AsyncMock(return_value=refreshed())
        manager = TokenManager(valid_credentials, refresh_fn=refresh_fn)
        seen = []

        async def call(token):
            seen.append(token)
            if token == "access-1":
                raise UnauthorizedException("google")
            return "ok"

        assert await manager.with_token_refresh(call) == "ok"
        assert seen == ["access-1", "access-2"]
        refresh_fn.assert_awaited_once()

    async def test_second_401_is_hard_failure(self, valid_credentials):
        refresh_fn = AsyncMock(return_value=refreshed())
        manager = TokenManager(valid_credentials, refresh_fn=refresh_fn)
        call = AsyncMock(side_effect=UnauthorizedException("google"))

        with pytest.raises(AuthenticationException):
            await manager.with_token_refresh(call)

        assert call.await_count == 2
        refresh_fn.assert_awaited_once()

    async def test_401_without_refresh_support_fails(self):
        manager = TokenManager(ConnectorCredentials(access_token="secret_notion"), provider="notion")
        call = AsyncMock(side_effect=UnauthorizedException("notion"))

        with pytest.raises(AuthenticationException):
            await manager.with_token_refresh(call)

        call.assert_awaited_once()

    async def test_concurrent_401s_refresh_once(self, valid_credentials):
        refresh_fn = AsyncMock(return_value=refreshed())
        manager = TokenManager(valid_credentials, refresh_fn=refresh_fn)

        async def call(token):
            await asyncio.sleep(0)
            if token == "access-1":
                raise UnauthorizedException("google")
            return token

        results = await asyncio.gather(
            manager.with_token_refresh(call),
            manager.with_token_refresh(call),
        )

        assert results == ["access-2", "access-2"]
        assert manager.refresh_count == 1

    async def test_other_errors_are_not_retried(self, valid_credentials):
        refresh_fn = AsyncMock()
        manager = TokenManager(valid_credentials, refresh_fn=refresh_fn)
        call = AsyncMock(side_effect=ProviderException("google", "500: boom", status_code=500))

        with pytest.raises(ProviderException):
            await manager.with_token_refresh(call)

        refresh_fn.assert_not_awaited()


# =============================================================================
# Persistence
# =============================================================================

class TestCredentialPersistence:
    """Tests for compare-and-swap persistence of refreshed tokens."""

    async def test_refresh_is_persisted(self, expiring_credentials):
        store = InMemoryCredentialStore({"conn-1": expiring_credentials.to_storage()})
        manager = TokenManager(
            expiring_credentials,
            refresh_fn=AsyncMock(return_value=refreshed()),
            connector_id="conn-1",
            credential_store=store,
        )

        await manager.ensure_valid_token()

        stored = await store.load("conn-1")
        assert stored["access_token"] == "access-2"
        assert stored["refresh_token"] == "refresh-1"
        assert store.writes == 1

    async def test_lost_swap_adopts_stored_token(self, expiring_credentials):
        winner = refreshed("access-from-other-worker").to_storage()
        store = InMemoryCredentialStore({"conn-1": winner})
        manager = TokenManager(
            expiring_credentials,
            refresh_fn=AsyncMock(return_value=refreshed()),
            connector_id="conn-1",
            credential_store=store,
        )

        token = await manager.ensure_valid_token()

        assert token == "access-from-other-worker"
        assert store.writes == 0


# =============================================================================
# Vendor Refresh Grants
# =============================================================================

class TestVendorRefresh:
    """Tests for the vendor token endpoint calls."""

    async def test_microsoft_refresh_posts_form(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "access_token": "ms-access",
                "refresh_token": "ms-refresh",
                "expires_in": 3600,
                "scope": "Files.Read User.Read",
            })

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            credentials = await refresh_microsoft_token("old-refresh", tenant_id="tenant-1", client=client)

        assert credentials.access_token == "ms-access"
        assert credentials.scope == ["Files.Read", "User.Read"]
        assert credentials.expires_at > datetime.now(timezone.utc)
        assert requests[0].url.path == "/tenant-1/oauth2/v2.0/token"
        form = parse_qs(requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]

    async def test_zoom_refresh_error_carries_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"].startswith("Basic ")
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid Token!"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderException) as exc_info:
                await refresh_zoom_token("bad-refresh", client=client)

        assert exc_info.value.status_code == 400
        assert "Invalid Token!" in exc_info.value.message
