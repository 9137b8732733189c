"""
Tests for the credential store and OAuth refresher.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from tradier_gateway.api.credentials import Credential, CredentialStore, OAuthRefresher
from tradier_gateway.api.errors import AuthError


def _mock_session(status=200, payload=None):
    """aiohttp-like session whose post() is an async context manager."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.return_value.__aenter__ = AsyncMock(return_value=response)
    session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


# =============================================================================
# Credential
# =============================================================================

class TestCredential:
    """Tests for the immutable credential snapshot."""

    def test_never_expires_without_expiry(self):
        credential = Credential(token="t", account_id="A")
        assert not credential.expires_within(10_000)

    def test_expires_within_margin(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        credential = Credential(token="t", account_id="A", expires_at=now + timedelta(seconds=30))
        assert credential.expires_within(60, now=now)
        assert not credential.expires_within(10, now=now)

    def test_repr_redacts_token(self):
        credential = Credential(token="super-secret", account_id="VA1", refresh_token="also-secret")
        text = repr(credential)
        assert "super-secret" not in text
        assert "also-secret" not in text
        assert "VA1" in text


# =============================================================================
# CredentialStore
# =============================================================================

class TestCredentialStore:
    """Tests for refresh coordination."""

    def test_current(self, credential_store, credential):
        assert credential_store.current() is credential
        assert credential_store.can_refresh

    @pytest.mark.asyncio
    async def test_refresh_replaces_credential(self, credential_store, refresher):
        new = await credential_store.refresh()
        assert new.token == "token-2"
        assert credential_store.current() is new
        assert credential_store.refresh_count == 1
        assert len(refresher.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_coalesce(self, credential):
        calls = []

        async def slow_refresh(old):
            calls.append(old)
            await asyncio.sleep(0.05)
            return Credential(token="fresh", account_id=old.account_id)

        store = CredentialStore(credential, refresher=slow_refresh)
        results = await asyncio.gather(*(store.refresh(stale=credential) for _ in range(5)))

        assert len(calls) == 1
        assert all(r.token == "fresh" for r in results)
        assert store.refresh_count == 1

    @pytest.mark.asyncio
    async def test_stale_refresh_skipped(self, credential_store, credential, refresher):
        await credential_store.refresh(stale=credential)
        # A caller still holding the old credential gets the new one for free
        result = await credential_store.refresh(stale=credential)

        assert result.token == "token-2"
        assert len(refresher.calls) == 1

    @pytest.mark.asyncio
    async def test_no_refresher_raises(self, credential):
        store = CredentialStore(credential)
        assert not store.can_refresh
        with pytest.raises(AuthError):
            await store.refresh()

    @pytest.mark.asyncio
    async def test_refresh_failure_wrapped_and_retryable(self, credential):
        attempts = []

        async def flaky(old):
            attempts.append(old)
            if len(attempts) == 1:
                raise RuntimeError("network down")
            return Credential(token="recovered", account_id=old.account_id)

        store = CredentialStore(credential, refresher=flaky)
        with pytest.raises(AuthError, match="network down"):
            await store.refresh()

        assert store.current() is credential

        new = await store.refresh()
        assert new.token == "recovered"

    @pytest.mark.asyncio
    async def test_listeners_notified(self, credential_store):
        seen = []

        def broken(_):
            raise ValueError("listener bug")

        credential_store.add_listener(broken)
        credential_store.add_listener(seen.append)

        new = await credential_store.refresh()
        assert seen == [new]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(self, credential):
        release = asyncio.Event()

        async def gated(old):
            await release.wait()
            return Credential(token="gated", account_id=old.account_id)

        store = CredentialStore(credential, refresher=gated)
        first = asyncio.create_task(store.refresh())
        second = asyncio.create_task(store.refresh())
        await asyncio.sleep(0.01)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        result = await asyncio.wait_for(second, timeout=1.0)
        assert result.token == "gated"
        assert store.current().token == "gated"

    @pytest.mark.asyncio
    async def test_ensure_fresh_refreshes_near_expiry(self, refresher):
        expiring = Credential(
            token="old",
            account_id="A",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=10),
        )
        store = CredentialStore(expiring, refresher=refresher, refresh_margin=60)
        assert store.needs_refresh

        result = await store.ensure_fresh()
        assert result.token == "token-2"

    @pytest.mark.asyncio
    async def test_ensure_fresh_keeps_valid_token(self, credential_store, credential, refresher):
        assert await credential_store.ensure_fresh() is credential
        assert refresher.calls == []


# =============================================================================
# OAuthRefresher
# =============================================================================

class TestOAuthRefresher:
    """Tests for the Tradier OAuth refresh call."""

    @pytest.mark.asyncio
    async def test_successful_refresh(self, credential):
        session = _mock_session(200, {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 86399,
        })
        refresher = OAuthRefresher("client", "secret", base_url="https://api.test", session=session)

        new = await refresher(credential)

        assert new.token == "new-access"
        assert new.refresh_token == "new-refresh"
        assert new.account_id == credential.account_id
        assert new.expires_at > datetime.now(timezone.utc)

        args, kwargs = session.post.call_args
        assert args[0] == "https://api.test/v1/oauth/refreshtoken"
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
        assert kwargs["auth"] == aiohttp.BasicAuth("client", "secret")

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(self, credential):
        session = _mock_session(200, {"access_token": "new-access"})
        refresher = OAuthRefresher("client", "secret", session=session)

        new = await refresher(credential)
        assert new.refresh_token == "refresh-1"
        assert new.expires_at is None

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, credential):
        session = _mock_session(401, {"error": "invalid_grant"})
        refresher = OAuthRefresher("client", "secret", session=session)

        with pytest.raises(AuthError) as exc_info:
            await refresher(credential)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self):
        session = _mock_session()
        refresher = OAuthRefresher("client", "secret", session=session)

        with pytest.raises(AuthError, match="No refresh token"):
            await refresher(Credential(token="t", account_id="A"))
        session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_close(self):
        session = _mock_session()
        refresher = OAuthRefresher("client", "secret", session=session)
        await refresher.close()
        session.close.assert_awaited_once()
