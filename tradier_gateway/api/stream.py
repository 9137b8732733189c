"""
Tradier Streaming Session Manager.

This module keeps a long-lived streaming subscription alive across network
failures. Each manager drives one WebSocket through an explicit state machine:

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> SUBSCRIBING -> LIVE
                         ^                                          |
                         +------------------ RECOVERING <-----------+

CLOSED is terminal. The desired-subscription set survives every reconnect and
is re-issued in full before the session reports LIVE again, so delivery is
at-least-once (Tradier streams carry no replay marker).

Key Components:
- StreamSessionManager: state machine, reader task, subscriber fan-out
- EventSubscriber: bounded per-subscriber buffer (drop oldest when full)
- TradierStreamAuthenticator: creates Tradier streaming sessions over REST
- AiohttpStreamTransport: WebSocket collaborator built on aiohttp
"""

import asyncio
import inspect
import logging
import random
import time
from collections import deque
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

import aiohttp

from tradier_gateway.api.client import TradierConfig
from tradier_gateway.api.credentials import CredentialStore
from tradier_gateway.api.errors import (
    AuthError,
    RequestError,
    StreamError,
    TransientError,
    TransportError,
)
from tradier_gateway.api.rest import StreamKind, TradierREST
from tradier_gateway.api.stream_codec import (
    KIND_MODES,
    DeliveryMode,
    EventKind,
    StreamCodec,
    StreamEvent,
    StreamSubscription,
)
from tradier_gateway.lib.logging_utils import GatewayLogger

logger = logging.getLogger(__name__)
events = GatewayLogger(__name__)


class StreamState(Enum):
    """Streaming session state."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    SUBSCRIBING = auto()
    LIVE = auto()
    RECOVERING = auto()
    CLOSED = auto()


STREAM_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.DISCONNECTED: frozenset({StreamState.CONNECTING, StreamState.CLOSED}),
    StreamState.CONNECTING: frozenset({
        StreamState.AUTHENTICATING, StreamState.RECOVERING,
        StreamState.DISCONNECTED, StreamState.CLOSED,
    }),
    StreamState.AUTHENTICATING: frozenset({
        StreamState.SUBSCRIBING, StreamState.RECOVERING,
        StreamState.DISCONNECTED, StreamState.CLOSED,
    }),
    StreamState.SUBSCRIBING: frozenset({
        StreamState.LIVE, StreamState.RECOVERING,
        StreamState.DISCONNECTED, StreamState.CLOSED,
    }),
    StreamState.LIVE: frozenset({StreamState.RECOVERING, StreamState.CLOSED}),
    StreamState.RECOVERING: frozenset({
        StreamState.CONNECTING, StreamState.DISCONNECTED, StreamState.CLOSED,
    }),
    StreamState.CLOSED: frozenset(),
}


# =============================================================================
# Collaborators
# =============================================================================

class StreamConnection(Protocol):
    """One open streaming connection."""

    async def send(self, message: str) -> None:
        """Send a text message. Raises TransportError on failure."""
        ...

    async def recv(self) -> Optional[str]:
        """Receive the next text frame; None once the connection is closed."""
        ...

    async def close(self) -> None:
        ...


class StreamTransport(Protocol):
    """Opens streaming connections. Raises TransportError on failure."""

    async def connect(self, url: str) -> StreamConnection:
        ...


class StreamAuthenticator(Protocol):
    """Performs the authentication handshake and returns a session id."""

    async def authenticate(self) -> str:
        ...


class AiohttpStreamConnection:
    """StreamConnection over an aiohttp WebSocket."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    async def send(self, message: str) -> None:
        if self._ws.closed:
            raise TransportError("WebSocket not connected")
        try:
            await self._ws.send_str(message)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError(f"WebSocket send failed: {e}") from e

    async def recv(self) -> Optional[str]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"WebSocket error: {msg.data}")

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpStreamTransport:
    """StreamTransport built on aiohttp.ClientSession.ws_connect."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat: Optional[float] = None,
    ):
        """
        Args:
            session: Optional aiohttp session to use
            heartbeat: WebSocket ping interval in seconds (None disables pings)
        """
        self._session = session
        self._heartbeat = heartbeat

    async def connect(self, url: str) -> AiohttpStreamConnection:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            ws = await self._session.ws_connect(url, heartbeat=self._heartbeat)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"WebSocket connect failed: {e}", endpoint=url) from e
        logger.info(f"Connected to {url}")
        return AiohttpStreamConnection(ws)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class TradierStreamAuthenticator:
    """Creates a Tradier streaming session over REST.

    The dispatcher is told not to refresh credentials itself; the session
    manager owns the refresh-and-retry-once decision for the handshake.
    """

    def __init__(self, rest: TradierREST, kind: StreamKind):
        self._rest = rest
        self._kind = StreamKind(kind)

    async def authenticate(self) -> str:
        session = await self._rest.create_stream_session(self._kind, refresh_on_auth=False)
        return session.session_id


# =============================================================================
# Subscribers
# =============================================================================

class EventSubscriber:
    """Bounded event buffer for one consumer.

    `push` never blocks: when the buffer is full the oldest unread event is
    discarded and `dropped` is incremented. Iterate with `async for`;
    iteration ends once the subscriber is closed and drained.
    """

    def __init__(
        self,
        name: str,
        maxsize: int,
        key: Optional[str] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.name = name
        self.maxsize = maxsize
        self.key = key
        self.kinds = frozenset(kinds) if kinds is not None else None
        self.dropped = 0
        self.delivered = 0
        self._buffer: deque[StreamEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def matches(self, event: StreamEvent) -> bool:
        if self.kinds is None:
            # Heartbeats only go to subscribers that ask for them
            if event.kind is EventKind.HEARTBEAT:
                return False
        elif event.kind not in self.kinds:
            return False
        return self.key is None or event.key == self.key

    def push(self, event: StreamEvent) -> bool:
        """Buffer an event. Returns False if an older event had to be dropped."""
        if self._closed:
            return True
        kept_all = True
        if len(self._buffer) >= self.maxsize:
            self._buffer.popleft()
            self.dropped += 1
            kept_all = False
        self._buffer.append(event)
        self._ready.set()
        return kept_all

    def get_nowait(self) -> Optional[StreamEvent]:
        if not self._buffer:
            return None
        event = self._buffer.popleft()
        if not self._buffer:
            self._ready.clear()
        self.delivered += 1
        return event

    async def get(self) -> Optional[StreamEvent]:
        """Wait for the next event; None once closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            await self._ready.wait()
        return self.get_nowait()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def __aiter__(self) -> "EventSubscriber":
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


EventCallback = Callable[[StreamEvent], Union[None, Awaitable[None]]]
StateCallback = Callable[[StreamState, StreamState], None]


# =============================================================================
# Session Manager
# =============================================================================

class StreamSessionManager:
    """Maintains one streaming session and its desired subscriptions.

    Example:
        manager = StreamSessionManager(
            "market", config.market_stream_url, transport,
            TradierMarketCodec(), authenticator, config, credentials,
        )
        await manager.start()
        await manager.subscribe("SPY", DeliveryMode.QUOTE)
        await manager.wait_until_live(timeout=10)

        async for event in manager.events(key="SPY"):
            print(event.payload)
    """

    def __init__(
        self,
        name: str,
        url: str,
        transport: StreamTransport,
        codec: StreamCodec,
        authenticator: StreamAuthenticator,
        config: TradierConfig,
        credentials: Optional[CredentialStore] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the manager in DISCONNECTED state.

        Args:
            name: Stream name used in logs
            url: WebSocket URL
            transport: Streaming collaborator
            codec: Message codec for this stream
            authenticator: Handshake returning the session id
            config: Gateway configuration (reconnect, heartbeat, buffers)
            credentials: Credential store refreshed when the handshake is rejected
            rng: Random source for backoff jitter
        """
        self.name = name
        self.url = url
        self._transport = transport
        self._codec = codec
        self._authenticator = authenticator
        self._credentials = credentials
        self._rng = rng

        self._reconnect_backoff = config.reconnect_backoff
        self._subscribe_backoff = config.request_backoff
        self._max_subscribe_attempts = max(1, config.max_subscribe_attempts)
        self._heartbeat_timeout = config.heartbeat_timeout
        self._buffer_size = config.event_buffer_size_per_subscriber

        self._state = StreamState.DISCONNECTED
        self._changed = asyncio.Event()
        self._state_callbacks: list[StateCallback] = []

        # Desired set is the source of truth; confirmed mirrors the live connection
        self._desired: set[StreamSubscription] = set()
        self._desired_lock = asyncio.Lock()
        self._confirmed: set[StreamSubscription] = set()

        self._connection: Optional[StreamConnection] = None
        self._session_id: Optional[str] = None
        self._send_lock = asyncio.Lock()
        self._run_task: Optional[asyncio.Task] = None
        self._closing = False

        self._subscribers: list[EventSubscriber] = []
        self._pumps: dict[int, tuple[EventSubscriber, EventCallback, Optional[asyncio.Task]]] = {}
        self._subscriber_seq = 0

        self._last_sequence: dict[tuple[EventKind, Optional[str]], int] = {}
        self.fatal_error: Optional[Exception] = None
        self.duplicates_dropped = 0
        self.reconnect_count = 0
        self.last_message_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state == StreamState.LIVE

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def active_subscriptions(self) -> frozenset[StreamSubscription]:
        """The desired-subscription set."""
        return frozenset(self._desired)

    @property
    def confirmed_subscriptions(self) -> frozenset[StreamSubscription]:
        """Subscriptions sent on the current connection."""
        return frozenset(self._confirmed)

    @property
    def subscribers(self) -> list[EventSubscriber]:
        return list(self._subscribers)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def on_state_change(self, callback: StateCallback) -> None:
        """Register a callback invoked with (old_state, new_state)."""
        self._state_callbacks.append(callback)

    def _transition(self, new_state: StreamState, reason: Optional[str] = None) -> None:
        old_state = self._state
        if new_state not in STREAM_TRANSITIONS[old_state]:
            raise StreamError(
                f"Illegal stream transition {old_state.name} -> {new_state.name}",
                endpoint=self.url,
            )

        self._state = new_state
        events.state_change(self.name, old_state.name, new_state.name, reason)

        # Wake every waiter, then arm a fresh event for the next change
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

        for callback in self._state_callbacks:
            try:
                callback(old_state, new_state)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background session task."""
        if self._state == StreamState.CLOSED:
            raise StreamError("Stream is closed", endpoint=self.url)
        if self._run_task is not None and not self._run_task.done():
            return

        self.fatal_error = None
        self._run_task = asyncio.create_task(self._run(), name=f"stream-{self.name}")
        for pump_id, (subscriber, callback, task) in list(self._pumps.items()):
            if task is None:
                self._pumps[pump_id] = (subscriber, callback, self._spawn_pump(subscriber, callback))

    async def close(self) -> None:
        """Stop the session, release the connection and close all subscribers."""
        if self._state == StreamState.CLOSED:
            return

        self._closing = True
        if self._run_task is not None:
            # Closing the connection unblocks a reader parked in recv()
            await self._teardown()
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None

        await self._teardown()
        self._transition(StreamState.CLOSED, "closed by caller")

        for subscriber in self._subscribers:
            subscriber.close()
        pump_tasks = [task for _, _, task in self._pumps.values() if task is not None]
        for task in pump_tasks:
            task.cancel()
        if pump_tasks:
            await asyncio.gather(*pump_tasks, return_exceptions=True)
        self._pumps.clear()
        self._subscribers.clear()

    async def wait_until_live(self, timeout: Optional[float] = None) -> None:
        """Wait until the session is LIVE.

        Raises:
            AuthError / StreamError: The fatal error that stopped the session
            StreamError: The session is closed or was never started
            asyncio.TimeoutError: `timeout` elapsed first
        """
        async def _wait() -> None:
            while True:
                if self._state == StreamState.LIVE:
                    return
                if self.fatal_error is not None:
                    raise self.fatal_error
                if self._state == StreamState.CLOSED:
                    raise StreamError("Stream is closed", endpoint=self.url)
                if self._run_task is None or self._run_task.done():
                    raise StreamError("Stream is not running", endpoint=self.url)
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout)

    async def join(self) -> None:
        """Wait for the session task to end; raise its fatal error, if any."""
        if self._run_task is not None:
            await asyncio.shield(self._run_task)
        if self.fatal_error is not None:
            raise self.fatal_error

    async def __aenter__(self) -> "StreamSessionManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _run(self) -> None:
        failures = 0

        while not self._closing:
            self._transition(StreamState.CONNECTING)
            try:
                self._connection = await self._transport.connect(self.url)

                self._transition(StreamState.AUTHENTICATING)
                self._session_id = await self._authenticate()

                self._transition(StreamState.SUBSCRIBING)
                await self._resubscribe()

                self._transition(StreamState.LIVE)
                failures = 0
                reason = await self._read_loop(self._connection)
            except (AuthError, RequestError) as e:
                self.fatal_error = e
                await self._teardown()
                self._transition(StreamState.DISCONNECTED, f"fatal: {e}")
                return
            except (TransportError, TransientError) as e:
                reason = str(e)

            if self._closing:
                return
            self._transition(StreamState.RECOVERING, reason)
            await self._teardown()

            failures += 1
            if self._reconnect_backoff.exhausted(failures):
                self.fatal_error = StreamError(
                    f"Stream {self.name} gave up reconnecting: {reason}",
                    endpoint=self.url,
                    attempts=failures,
                )
                self._transition(StreamState.DISCONNECTED, "reconnect attempts exhausted")
                return

            delay = self._reconnect_backoff.delay(failures, self._rng)
            logger.info(f"Stream {self.name} reconnecting in {delay:.1f}s (attempt {failures})")
            self.reconnect_count += 1
            await asyncio.sleep(delay)

    async def _authenticate(self) -> str:
        stale = self._credentials.current() if self._credentials else None
        try:
            return await self._authenticator.authenticate()
        except AuthError:
            if self._credentials is None or not self._credentials.can_refresh:
                raise
            logger.warning(f"Stream {self.name} handshake rejected, refreshing credential")
            await self._credentials.refresh(stale=stale)
            return await self._authenticator.authenticate()

    async def _teardown(self) -> None:
        connection, self._connection = self._connection, None
        self._session_id = None
        self._confirmed.clear()
        if connection is not None:
            try:
                await connection.close()
            except TransportError as e:
                logger.debug(f"Stream {self.name} close error: {e}")

    async def _abort_connection(self, reason: str) -> None:
        """Close the live connection so the reader notices and recovers."""
        connection = self._connection
        if connection is None:
            return
        logger.warning(f"Stream {self.name} aborting connection: {reason}")
        try:
            await connection.close()
        except TransportError as e:
            logger.debug(f"Stream {self.name} close error: {e}")

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def _make_subscription(self, key: str, mode: Union[DeliveryMode, str]) -> StreamSubscription:
        subscription = StreamSubscription(str(key), DeliveryMode(mode))
        if not self._codec.accepts(subscription):
            raise ValueError(f"{self.name} stream does not support mode {subscription.mode.value}")
        return subscription

    async def subscribe(self, key: str, mode: Union[DeliveryMode, str]) -> bool:
        """Add an entry to the desired set.

        Sends the subscribe message immediately when LIVE; otherwise the
        entry is picked up by the next SUBSCRIBING phase.

        Returns:
            False if the entry was already desired
        """
        subscription = self._make_subscription(key, mode)
        async with self._desired_lock:
            if subscription in self._desired:
                return False
            self._desired.add(subscription)
            live = self._state == StreamState.LIVE

        logger.info(f"Stream {self.name} subscribed {subscription}")
        if live:
            try:
                await self._send_subscribe(subscription)
            except TransportError as e:
                await self._abort_connection(f"subscribe {subscription} failed: {e}")
        return True

    async def unsubscribe(self, key: str, mode: Union[DeliveryMode, str]) -> bool:
        """Remove an entry from the desired set.

        Returns:
            False if the entry was not desired
        """
        subscription = self._make_subscription(key, mode)
        async with self._desired_lock:
            if subscription not in self._desired:
                return False
            self._desired.discard(subscription)
            live = self._state == StreamState.LIVE

        logger.info(f"Stream {self.name} unsubscribed {subscription}")
        if live and subscription in self._confirmed:
            try:
                await self._send_unsubscribe(subscription)
            except TransportError as e:
                await self._abort_connection(f"unsubscribe {subscription} failed: {e}")
        return True

    async def _resubscribe(self) -> None:
        self._confirmed.clear()
        while True:
            async with self._desired_lock:
                pending = sorted(self._desired - self._confirmed, key=lambda s: (s.key, s.mode.value))
                removed = sorted(self._confirmed - self._desired, key=lambda s: (s.key, s.mode.value))
            if not pending and not removed:
                return
            for subscription in pending:
                await self._send_subscribe(subscription)
            for subscription in removed:
                await self._send_unsubscribe(subscription)

    async def _send_subscribe(self, subscription: StreamSubscription) -> None:
        resume_from = None
        if self._codec.supports_gap_fill:
            markers = [seq for (_, key), seq in self._last_sequence.items() if key == subscription.key]
            resume_from = max(markers) if markers else None

        attempt = 0
        while True:
            try:
                # Market payloads replace the server-side set, so the active set
                # must not change between encoding and confirming
                async with self._send_lock:
                    message = self._codec.encode_subscribe(
                        subscription,
                        self._session_id,
                        frozenset(self._confirmed),
                        resume_from=resume_from,
                    )
                    if message is not None:
                        await self._send(message)
                    self._confirmed.add(subscription)
                return
            except TransportError as e:
                attempt += 1
                if attempt >= self._max_subscribe_attempts:
                    raise TransportError(
                        f"Subscribe {subscription} failed after {attempt} attempts: {e.message}",
                        endpoint=self.url,
                        attempts=attempt,
                    ) from e
                delay = self._subscribe_backoff.delay(attempt, self._rng)
                logger.warning(f"Stream {self.name} subscribe {subscription} failed, retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

    async def _send_unsubscribe(self, subscription: StreamSubscription) -> None:
        async with self._send_lock:
            message = self._codec.encode_unsubscribe(
                subscription,
                self._session_id,
                frozenset(self._confirmed),
            )
            if message is not None:
                await self._send(message)
            self._confirmed.discard(subscription)

    async def _send(self, message: str) -> None:
        """Send one control message. Caller holds `_send_lock`."""
        connection = self._connection
        if connection is None:
            raise TransportError("Stream not connected", endpoint=self.url)
        await connection.send(message)

    # -------------------------------------------------------------------------
    # Reading and delivery
    # -------------------------------------------------------------------------

    async def _read_loop(self, connection: StreamConnection) -> str:
        """Drain the connection until it closes or goes quiet; return the reason."""
        while not self._closing:
            try:
                async with asyncio.timeout(self._heartbeat_timeout):
                    raw = await connection.recv()
            except TimeoutError:
                return f"no traffic for {self._heartbeat_timeout:.0f}s"

            if raw is None:
                return "connection closed"

            self.last_message_at = time.monotonic()
            for event in self._codec.decode(raw):
                self._dispatch(event)

        return "closed by caller"

    def _dispatch(self, event: StreamEvent) -> None:
        if event.kind is EventKind.ERROR:
            logger.warning(f"Stream {self.name} error message: {event.payload}")

        if event.sequence is not None:
            marker = (event.kind, event.key)
            last = self._last_sequence.get(marker)
            if last is not None and event.sequence <= last:
                self.duplicates_dropped += 1
                return
            self._last_sequence[marker] = event.sequence

        # Server filters apply to every streamed symbol; keep only desired (key, mode) pairs
        mode = KIND_MODES.get(event.kind)
        if (
            self._codec.routes_by_subscription
            and mode is not None
            and StreamSubscription(event.key, mode) not in self._desired
        ):
            return

        for subscriber in self._subscribers:
            if subscriber.matches(event) and not subscriber.push(event):
                if subscriber.dropped == 1 or subscriber.dropped % 100 == 0:
                    events.events_dropped(self.name, subscriber.name, subscriber.dropped)

    def _next_subscriber_name(self, prefix: str) -> str:
        self._subscriber_seq += 1
        return f"{prefix}-{self._subscriber_seq}"

    def events(
        self,
        key: Optional[str] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> EventSubscriber:
        """Create a subscriber receiving events for `key` (all keys if None)."""
        if self._state == StreamState.CLOSED:
            raise StreamError("Stream is closed", endpoint=self.url)
        subscriber = EventSubscriber(
            self._next_subscriber_name(self.name),
            self._buffer_size,
            key=key,
            kinds=kinds,
        )
        self._subscribers.append(subscriber)
        return subscriber

    def on_event(
        self,
        callback: EventCallback,
        key: Optional[str] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> EventSubscriber:
        """Deliver matching events to `callback` from a dedicated task.

        The callback may be a plain function or a coroutine function. Slow
        callbacks only fill their own buffer; they never block the reader.
        """
        subscriber = self.events(key=key, kinds=kinds)
        try:
            asyncio.get_running_loop()
            task = self._spawn_pump(subscriber, callback)
        except RuntimeError:
            # No loop yet; the pump starts with start()
            task = None
        self._pumps[id(subscriber)] = (subscriber, callback, task)
        return subscriber

    def remove_subscriber(self, subscriber: EventSubscriber) -> None:
        """Detach and close a subscriber (and its callback task)."""
        subscriber.close()
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
        entry = self._pumps.pop(id(subscriber), None)
        if entry is not None and entry[2] is not None:
            entry[2].cancel()

    def _spawn_pump(self, subscriber: EventSubscriber, callback: EventCallback) -> asyncio.Task:
        return asyncio.create_task(self._pump(subscriber, callback), name=subscriber.name)

    async def _pump(self, subscriber: EventSubscriber, callback: EventCallback) -> None:
        async for event in subscriber:
            try:
                result: Any = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event callback error on {subscriber.name}: {e}")
