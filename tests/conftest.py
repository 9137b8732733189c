"""
Pytest fixtures for gateway tests.

This module provides:
- Fast-timing gateway configuration
- Fake HTTP and streaming collaborators that record what was sent
- Credential fixtures and a controllable clock
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

import pytest

from tradier_gateway.api.client import HttpResponse, TradierConfig
from tradier_gateway.api.credentials import Credential, CredentialStore
from tradier_gateway.api.errors import TransportError


# =============================================================================
# Helpers
# =============================================================================

def json_response(status: int = 200, body: Any = None, headers: Optional[dict] = None) -> HttpResponse:
    """Build an HttpResponse with a JSON body."""
    return HttpResponse(
        status=status,
        headers=headers or {"Content-Type": "application/json"},
        body=json.dumps(body) if body is not None else "",
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHttpTransport:
    """HttpTransport that replays queued responses or delegates to a handler.

    Queue items may be HttpResponse objects or exceptions (raised).
    """

    def __init__(
        self,
        responses: Optional[list[Union[HttpResponse, Exception]]] = None,
        handler: Optional[Callable[..., HttpResponse]] = None,
    ):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: list[dict] = []
        self.closed = False

    def queue(self, *items: Union[HttpResponse, Exception]) -> None:
        self.responses.extend(items)

    async def send(self, method, url, headers, body=None, params=None, timeout=None):
        call = {
            "method": method,
            "url": url,
            "headers": dict(headers),
            "body": body,
            "params": params,
        }
        self.calls.append(call)

        if self.handler is not None:
            result = self.handler(call)
        elif self.responses:
            result = self.responses.pop(0)
        else:
            raise AssertionError(f"Unexpected request: {method} {url}")

        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class FakeStreamConnection:
    """In-memory streaming connection."""

    def __init__(self, send_failures: int = 0):
        self.sent: list[str] = []
        self.closed = False
        self.send_failures = send_failures
        self.send_delay = 0.0
        self._inbound: asyncio.Queue = asyncio.Queue()

    @property
    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    def feed(self, *messages: Union[str, dict]) -> None:
        """Deliver messages from the server (dicts are JSON encoded)."""
        for message in messages:
            if isinstance(message, dict):
                message = json.dumps(message)
            self._inbound.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbound.put_nowait(None)

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("connection closed")
        if self.send_failures > 0:
            self.send_failures -= 1
            raise TransportError("send failed")
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(message)

    async def recv(self) -> Optional[str]:
        if self.closed and self._inbound.empty():
            return None
        return await self._inbound.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(None)


class FakeStreamTransport:
    """StreamTransport creating FakeStreamConnections.

    Attributes:
        connect_failures: Number of upcoming connects that fail
        send_failures: Send failures injected into the next connection
        connection_class: Connection type to create
    """

    def __init__(self, connect_failures: int = 0, send_failures: int = 0, connection_class=None):
        self.connection_class = connection_class or FakeStreamConnection
        self.connect_failures = connect_failures
        self.send_failures = send_failures
        self.connections: list[FakeStreamConnection] = []
        self.urls: list[str] = []
        self.closed = False

    @property
    def current(self) -> Optional[FakeStreamConnection]:
        return self.connections[-1] if self.connections else None

    async def connect(self, url: str) -> FakeStreamConnection:
        self.urls.append(url)
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise TransportError("connect refused", endpoint=url)
        connection = self.connection_class(send_failures=self.send_failures)
        self.send_failures = 0
        self.connections.append(connection)
        return connection

    async def close(self) -> None:
        self.closed = True


class FakeAuthenticator:
    """Authenticator returning sequential session ids; queued errors are raised first."""

    def __init__(self, errors: Optional[list[Exception]] = None):
        self.errors = list(errors or [])
        self.calls = 0

    async def authenticate(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return f"session-{self.calls}"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config():
    """Gateway config with fast timings for tests."""
    return TradierConfig(
        base_url="https://api.test",
        market_stream_url="wss://ws.test/v1/markets/events",
        account_stream_url="wss://ws.test/v1/accounts/events",
        access_token="token-1",
        account_id="VA000001",
        rate_limit_capacity=100,
        rate_limit_refill_per_sec=100.0,
        max_retries=3,
        initial_backoff=0.01,
        max_backoff=0.05,
        backoff_jitter=0.0,
        initial_reconnect_backoff=0.01,
        max_reconnect_backoff=0.05,
        heartbeat_timeout=1.0,
        event_buffer_size_per_subscriber=100,
        max_subscribe_attempts=3,
    )


@pytest.fixture
def credential():
    return Credential(token="token-1", account_id="VA000001", refresh_token="refresh-1")


@pytest.fixture
def refresher():
    """Refresher coroutine that issues token-2, token-3, ..."""
    calls = []

    async def _refresh(old: Credential) -> Credential:
        calls.append(old)
        return Credential(
            token=f"token-{len(calls) + 1}",
            account_id=old.account_id,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=24),
            refresh_token=old.refresh_token,
        )

    _refresh.calls = calls
    return _refresh


@pytest.fixture
def credential_store(credential, refresher):
    return CredentialStore(credential, refresher=refresher)


@pytest.fixture
def http_transport():
    return FakeHttpTransport()


@pytest.fixture
def stream_transport():
    return FakeStreamTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wait_until():
    """Poll a predicate until it is true or the timeout elapses."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until
