"""
Credential storage and refresh for the Tradier API.

The store owns a single immutable Credential snapshot. Readers take the
current snapshot without blocking; refresh replaces it atomically and
publishes the new value to registered listeners.

Concurrent refresh requests are coalesced: while one refresh is in flight,
every other caller awaits the same result instead of issuing its own call.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import aiohttp

from tradier_gateway.api.errors import AuthError
from tradier_gateway.lib.constants import (
    DEFAULT_CREDENTIAL_REFRESH_MARGIN_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    TRADIER_API_BASE_URL,
    TRADIER_OAUTH_REFRESH_PATH,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Bearer credential for one Tradier account.

    Attributes:
        token: OAuth access token
        account_id: Brokerage account number
        expires_at: Token expiry (UTC), None if the token does not expire
        refresh_token: OAuth refresh token, if the application has one
    """
    token: str
    account_id: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None

    def expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        """Check if the token expires within `margin_seconds` of `now`."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=margin_seconds) >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"Credential(token='[REDACTED]', account_id={self.account_id!r}, "
            f"expires_at={self.expires_at!r})"
        )


Refresher = Callable[[Credential], Awaitable[Credential]]
CredentialListener = Callable[[Credential], None]


class CredentialStore:
    """Single owner of the current Credential.

    Example:
        store = CredentialStore(Credential(token="abc", account_id="VA000001"))
        credential = store.current()
        credential = await store.refresh()
    """

    def __init__(
        self,
        credential: Credential,
        refresher: Optional[Refresher] = None,
        refresh_margin: float = DEFAULT_CREDENTIAL_REFRESH_MARGIN_SECONDS,
    ):
        """
        Initialize the store.

        Args:
            credential: Initial credential
            refresher: Coroutine producing a new credential from the old one
            refresh_margin: Seconds before expiry that trigger a proactive refresh
        """
        self._credential = credential
        self._refresher = refresher
        self._refresh_margin = refresh_margin
        self._inflight: Optional[asyncio.Task] = None
        self._listeners: list[CredentialListener] = []
        self.refresh_count = 0

    @property
    def can_refresh(self) -> bool:
        return self._refresher is not None

    @property
    def needs_refresh(self) -> bool:
        """True when the current token is within the refresh margin of expiry."""
        return self._credential.expires_within(self._refresh_margin)

    def current(self) -> Credential:
        """Return the current credential snapshot."""
        return self._credential

    def add_listener(self, listener: CredentialListener) -> None:
        """Register a callback invoked with every refreshed credential."""
        self._listeners.append(listener)

    async def ensure_fresh(self) -> Credential:
        """Return a credential, refreshing first if it is about to expire."""
        if self.needs_refresh and self.can_refresh:
            logger.info("Token expiring soon, refreshing...")
            return await self.refresh(stale=self._credential)
        return self._credential

    async def refresh(self, stale: Optional[Credential] = None) -> Credential:
        """Refresh the credential, coalescing concurrent requests.

        Args:
            stale: The credential the caller found invalid. If the store has
                already moved past it, the current credential is returned
                without another network refresh.

        Returns:
            The refreshed credential

        Raises:
            AuthError: If no refresher is configured or the refresh fails
        """
        if stale is not None and stale is not self._credential and self._inflight is None:
            return self._credential

        if self._refresher is None:
            raise AuthError("Credential rejected and no refresh mechanism is configured")

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._do_refresh())
            self._inflight.add_done_callback(self._clear_inflight)

        # Shield so one cancelled waiter does not abort the shared refresh
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved when every waiter was cancelled
            task.exception()

    async def _do_refresh(self) -> Credential:
        old = self._credential
        try:
            new = await self._refresher(old)
        except AuthError:
            raise
        except Exception as e:
            logger.error(f"Credential refresh failed: {e}")
            raise AuthError(f"Credential refresh failed: {e}") from e

        self._credential = new
        self.refresh_count += 1
        logger.info(f"Credential refreshed for account {new.account_id}")

        for listener in self._listeners:
            try:
                listener(new)
            except Exception as e:
                logger.error(f"Credential listener error: {e}")

        return new


class OAuthRefresher:
    """Refreshes Tradier OAuth access tokens using a refresh token.

    Tradier expects HTTP basic auth with the application's client id and
    secret, and a form body with `grant_type=refresh_token`.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = TRADIER_API_BASE_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._url = f"{base_url}{TRADIER_OAUTH_REFRESH_PATH}"
        self._timeout = timeout
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __call__(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise AuthError("No refresh token available", endpoint=TRADIER_OAUTH_REFRESH_PATH)

        session = await self._get_session()
        form = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}

        try:
            async with session.post(
                self._url,
                data=form,
                auth=aiohttp.BasicAuth(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
            ) as response:
                status = response.status
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AuthError(
                f"Connection error during token refresh: {e}",
                endpoint=TRADIER_OAUTH_REFRESH_PATH,
            ) from e

        if status // 100 != 2 or not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError(
                "Token refresh rejected",
                endpoint=TRADIER_OAUTH_REFRESH_PATH,
                status_code=status,
            )

        expires_at = None
        if data.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=float(data["expires_in"]))

        return replace(
            credential,
            token=data["access_token"],
            expires_at=expires_at,
            refresh_token=data.get("refresh_token") or credential.refresh_token,
        )
