"""
Tradier Request Dispatcher with Authentication, Rate Limiting and Retries.

This module provides the core client for interacting with the Tradier REST API,
handling credential injection, token refresh, rate limiting, and error
classification.

Key Features:
- Bearer token authentication with proactive and reactive refresh
- Token bucket rate limiting with per-endpoint costs
- Exponential backoff with jitter on 429/5xx/network errors
- Server Retry-After hints honored over local estimates
- Typed error mapping (AuthError, TransientError, RequestError)

API Reference: https://documentation.tradier.com/brokerage-api
"""

import asyncio
import json
import logging
import os
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional, Protocol

import aiohttp

from tradier_gateway.api.backoff import BackoffPolicy
from tradier_gateway.api.credentials import Credential, CredentialStore
from tradier_gateway.api.errors import (
    AuthError,
    RequestError,
    TransientError,
    TransportError,
)
from tradier_gateway.api.rate_limiter import TokenBucket
from tradier_gateway.lib.constants import (
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_CREDENTIAL_REFRESH_MARGIN_SECONDS,
    DEFAULT_ENDPOINT_COSTS,
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    DEFAULT_INITIAL_BACKOFF_SECONDS,
    DEFAULT_INITIAL_RECONNECT_BACKOFF_SECONDS,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_MAX_RECONNECT_BACKOFF_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_SUBSCRIBE_ATTEMPTS,
    DEFAULT_ORDER_RETENTION_SECONDS,
    DEFAULT_PENDING_EVENT_TTL_SECONDS,
    DEFAULT_RATE_LIMIT_CAPACITY,
    DEFAULT_RATE_LIMIT_REFILL_PER_SEC,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    TRADIER_ACCOUNT_STREAM_URL,
    TRADIER_API_BASE_URL,
    TRADIER_MARKET_STREAM_URL,
)
from tradier_gateway.lib.logging_utils import GatewayLogger

logger = logging.getLogger(__name__)
events = GatewayLogger(__name__)


@dataclass
class TradierConfig:
    """Configuration for the Tradier gateway.

    Attributes:
        base_url: REST API base URL
        market_stream_url: Market events WebSocket URL
        account_stream_url: Account events WebSocket URL
        access_token: OAuth access token
        refresh_token: OAuth refresh token (enables automatic refresh)
        client_id: OAuth application id (for refresh)
        client_secret: OAuth application secret (for refresh)
        account_id: Brokerage account number
        rate_limit_capacity: Token bucket burst size
        rate_limit_refill_per_sec: Token bucket steady refill rate
        credential_refresh_margin: Seconds before expiry to refresh the token
        request_timeout: Per-request timeout in seconds
        max_retries: Retry cap for transient failures
        initial_backoff: First retry delay in seconds
        max_backoff: Ceiling for retry delays in seconds
        initial_reconnect_backoff: First stream reconnect delay in seconds
        max_reconnect_backoff: Ceiling for stream reconnect delays in seconds
        max_reconnect_attempts: Stream reconnect cap (None = retry forever)
        max_subscribe_attempts: Send attempts per subscription before reconnecting
        heartbeat_timeout: Seconds without stream traffic before recovering
        event_buffer_size_per_subscriber: Bounded queue size per subscriber
        order_retention_seconds: How long terminal orders stay queryable
        pending_event_ttl: How long unmatched order events are buffered
    """
    base_url: str = TRADIER_API_BASE_URL
    market_stream_url: str = TRADIER_MARKET_STREAM_URL
    account_stream_url: str = TRADIER_ACCOUNT_STREAM_URL
    access_token: str = ""
    refresh_token: Optional[str] = None
    client_id: str = ""
    client_secret: str = ""
    account_id: str = ""
    rate_limit_capacity: int = DEFAULT_RATE_LIMIT_CAPACITY
    rate_limit_refill_per_sec: float = DEFAULT_RATE_LIMIT_REFILL_PER_SEC
    endpoint_costs: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_ENDPOINT_COSTS))
    credential_refresh_margin: float = DEFAULT_CREDENTIAL_REFRESH_MARGIN_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF_SECONDS
    max_backoff: float = DEFAULT_MAX_BACKOFF_SECONDS
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER
    initial_reconnect_backoff: float = DEFAULT_INITIAL_RECONNECT_BACKOFF_SECONDS
    max_reconnect_backoff: float = DEFAULT_MAX_RECONNECT_BACKOFF_SECONDS
    max_reconnect_attempts: Optional[int] = None
    max_subscribe_attempts: int = DEFAULT_MAX_SUBSCRIBE_ATTEMPTS
    heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS
    event_buffer_size_per_subscriber: int = DEFAULT_EVENT_BUFFER_SIZE
    order_retention_seconds: float = DEFAULT_ORDER_RETENTION_SECONDS
    pending_event_ttl: float = DEFAULT_PENDING_EVENT_TTL_SECONDS

    @classmethod
    def from_env(cls) -> "TradierConfig":
        """Create config from environment variables.

        Environment variables:
            TRADIER_ACCESS_TOKEN: OAuth access token
            TRADIER_REFRESH_TOKEN: Optional OAuth refresh token
            TRADIER_CLIENT_ID: Optional OAuth client id
            TRADIER_CLIENT_SECRET: Optional OAuth client secret
            TRADIER_ACCOUNT_ID: Brokerage account number
            TRADIER_REST_BASE_URL: Optional custom base URL
            TRADIER_REST_TIMEOUT: Optional request timeout in seconds
        """
        return cls(
            base_url=os.getenv("TRADIER_REST_BASE_URL", TRADIER_API_BASE_URL),
            access_token=os.getenv("TRADIER_ACCESS_TOKEN", ""),
            refresh_token=os.getenv("TRADIER_REFRESH_TOKEN") or None,
            client_id=os.getenv("TRADIER_CLIENT_ID", ""),
            client_secret=os.getenv("TRADIER_CLIENT_SECRET", ""),
            account_id=os.getenv("TRADIER_ACCOUNT_ID", ""),
            request_timeout=float(os.getenv("TRADIER_REST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS)),
        )

    @property
    def request_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial=self.initial_backoff,
            maximum=self.max_backoff,
            jitter=self.backoff_jitter,
            max_attempts=self.max_retries,
        )

    @property
    def reconnect_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial=self.initial_reconnect_backoff,
            maximum=self.max_reconnect_backoff,
            jitter=self.backoff_jitter,
            max_attempts=self.max_reconnect_attempts,
        )

    def credential(self) -> Credential:
        """Build the initial Credential from this config."""
        return Credential(
            token=self.access_token,
            account_id=self.account_id,
            refresh_token=self.refresh_token,
        )


# =============================================================================
# HTTP Collaborator
# =============================================================================

@dataclass
class HttpResponse:
    """Raw HTTP response returned by an HttpTransport."""
    status: int
    headers: Mapping[str, str]
    body: str


class HttpTransport(Protocol):
    """Executes one HTTP request. Raises TransportError on network failure."""

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[Any] = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """HttpTransport backed by a lazily created aiohttp.ClientSession.

    Dict bodies are sent form-encoded, which is what Tradier expects for
    order and session endpoints.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ):
        self._session = session
        self._timeout = timeout

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[Any] = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        session = await self._get_session()
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None

        try:
            async with session.request(
                method,
                url,
                headers=dict(headers),
                data=body,
                params=params,
                timeout=request_timeout,
            ) as response:
                text = await response.text()
                return HttpResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=text,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Connection error: {e}", endpoint=url) from e

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


# =============================================================================
# Request Outcome
# =============================================================================

@dataclass
class RequestOutcome:
    """Result of a successful dispatched request.

    Attributes:
        status: HTTP status code
        body: Raw response body
        headers: Response headers
        retry_after: Server-provided retry hint in seconds, if any
        attempts: Number of network attempts the request took
    """
    status: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)
    retry_after: Optional[float] = None
    attempts: int = 1

    def json(self) -> Any:
        """Decode the body as JSON (None for an empty body)."""
        if not self.body:
            return None
        return json.loads(self.body)


def parse_retry_after(headers: Mapping[str, str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    value = None
    for key, header_value in headers.items():
        if key.lower() == "retry-after":
            value = header_value
            break
    if value is None:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def extract_error_message(body: str, default: str) -> str:
    """Pull a human readable message out of a Tradier error body."""
    try:
        data = json.loads(body) if body else None
    except ValueError:
        return body.strip()[:200] or default

    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, dict):
            error = errors.get("error")
            if isinstance(error, list) and error:
                return "; ".join(str(e) for e in error)
            if error:
                return str(error)
        fault = data.get("fault")
        if isinstance(fault, dict) and fault.get("faultstring"):
            return str(fault["faultstring"])
        if data.get("error"):
            return str(data["error"])
    return default


# =============================================================================
# Request Dispatcher
# =============================================================================

class RequestDispatcher:
    """Authenticated, rate limited gateway to the Tradier REST API.

    All HTTP requests should go through this dispatcher. Retries are
    transparent: each call to `execute` is one logical request even when
    several network attempts happen underneath.

    Example:
        dispatcher = RequestDispatcher(config, credentials, bucket)
        outcome = await dispatcher.execute("GET", "/v1/user/profile")
        profile = outcome.json()
        await dispatcher.close()
    """

    def __init__(
        self,
        config: TradierConfig,
        credentials: CredentialStore,
        rate_limiter: Optional[TokenBucket] = None,
        transport: Optional[HttpTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            config: Gateway configuration
            credentials: Credential store supplying bearer tokens
            rate_limiter: Shared token bucket (built from config if omitted)
            transport: HTTP collaborator (aiohttp if omitted)
            rng: Random source for backoff jitter
        """
        self.config = config
        self._credentials = credentials
        self._rate_limiter = rate_limiter or TokenBucket(
            config.rate_limit_capacity,
            config.rate_limit_refill_per_sec,
        )
        self._transport = transport or AiohttpTransport(timeout=config.request_timeout)
        self._backoff = config.request_backoff
        self._rng = rng

    @property
    def rate_limiter(self) -> TokenBucket:
        return self._rate_limiter

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    def cost_for(self, path: str) -> int:
        """Declared token cost of an endpoint (longest matching prefix)."""
        best, best_len = 1, -1
        for prefix, cost in self.config.endpoint_costs.items():
            if path.startswith(prefix) and len(prefix) > best_len:
                best, best_len = cost, len(prefix)
        return best

    async def execute(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Mapping[str, Any]] = None,
        cost: Optional[int] = None,
        refresh_on_auth: bool = True,
    ) -> RequestOutcome:
        """Execute one logical request against the API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API path (e.g., "/v1/user/profile")
            body: Form body for POST/PUT
            params: Query parameters
            cost: Rate limit cost override
            refresh_on_auth: Refresh credentials and retry once on 401/403

        Returns:
            RequestOutcome for a 2xx response

        Raises:
            AuthError: Credentials rejected even after one refresh
            TransientError: 429/5xx/network failures outlived the retry cap
            RequestError: Any other 4xx response
        """
        method = method.upper()
        url = f"{self.config.base_url}{path}"
        cost = cost if cost is not None else self.cost_for(path)

        attempts = 0
        transient_failures = 0
        auth_retried = False

        while True:
            credential = await self._credentials.ensure_fresh()
            await self._rate_limiter.acquire(cost)

            headers = {
                "Authorization": f"Bearer {credential.token}",
                "Accept": "application/json",
            }
            attempts += 1
            started = time.perf_counter()

            try:
                response = await self._transport.send(
                    method,
                    url,
                    headers,
                    body=body,
                    params=params,
                    timeout=self.config.request_timeout,
                )
            except TransportError as e:
                transient_failures += 1
                await self._backoff_or_raise(
                    path, f"network error: {e.message}", transient_failures, attempts, None, None
                )
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            status = response.status
            retry_after = parse_retry_after(response.headers)
            events.request(method, path, status, attempts, latency_ms)

            if 200 <= status < 300:
                return RequestOutcome(
                    status=status,
                    body=response.body,
                    headers=response.headers,
                    retry_after=retry_after,
                    attempts=attempts,
                )

            if status in (401, 403):
                message = extract_error_message(response.body, f"Authentication failed ({status})")
                if auth_retried or not refresh_on_auth:
                    raise AuthError(
                        message,
                        endpoint=path,
                        status_code=status,
                        attempts=attempts,
                        body=response.body,
                    )
                logger.warning(f"Authentication rejected for {path}, refreshing credential")
                auth_retried = True
                try:
                    await self._credentials.refresh(stale=credential)
                except AuthError as e:
                    raise AuthError(
                        f"{message}; {e.message}",
                        endpoint=path,
                        status_code=status,
                        attempts=attempts,
                        body=response.body,
                    ) from e
                continue

            if status == 429 or status >= 500:
                transient_failures += 1
                if status == 429 and retry_after is not None:
                    # Next acquire() waits out the penalty
                    self._rate_limiter.penalize(retry_after)
                await self._backoff_or_raise(
                    path,
                    f"status {status}",
                    transient_failures,
                    attempts,
                    status,
                    retry_after,
                    response.body,
                )
                continue

            raise RequestError(
                extract_error_message(response.body, f"Client error {status}"),
                endpoint=path,
                status_code=status,
                attempts=attempts,
                body=response.body,
            )

    async def _backoff_or_raise(
        self,
        path: str,
        reason: str,
        failures: int,
        attempts: int,
        status: Optional[int],
        retry_after: Optional[float],
        body: Optional[str] = None,
    ) -> None:
        if self._backoff.exhausted(failures):
            raise TransientError(
                f"Request failed after retries: {reason}",
                retry_after=retry_after,
                endpoint=path,
                status_code=status,
                attempts=attempts,
                body=body,
            )

        if retry_after is not None:
            # A 429 hint was already pushed into the limiter
            delay = 0.0 if status == 429 else retry_after
        else:
            delay = self._backoff.delay(failures, self._rng)

        events.retry(path, reason, failures, delay)
        if delay > 0:
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Close the underlying transport."""
        await self._transport.close()

    async def __aenter__(self) -> "RequestDispatcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
