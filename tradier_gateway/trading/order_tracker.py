"""
Order Lifecycle Tracker.

Reconciles the two sources of truth about an order:
- The synchronous acknowledgment returned by the REST submission
- Asynchronous status events delivered by the account events stream

Order lifecycle:
    PENDING -> {ACCEPTED, REJECTED} -> WORKING -> {FILLED, CANCELLED, EXPIRED}

A partial fill keeps the order WORKING with a larger filled quantity.
Terminal orders stay queryable for a retention window, then are evicted.

Events are applied idempotently: each carries a version (sequence marker,
else the broker's transaction timestamp). Older versions are ignored, and at
an equal version only forward progress is applied, so redelivered events
after a stream reconnect are no-ops.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from tradier_gateway.api.errors import ConflictError, RequestError, TradierAPIError
from tradier_gateway.api.rest import OrderDuration, OrderRequest, OrderType, TradierREST
from tradier_gateway.api.stream import EventSubscriber, StreamSessionManager
from tradier_gateway.api.stream_codec import EventKind, StreamEvent
from tradier_gateway.lib.constants import (
    DEFAULT_ORDER_RETENTION_SECONDS,
    DEFAULT_PENDING_EVENT_TTL_SECONDS,
)
from tradier_gateway.lib.logging_utils import GatewayLogger

logger = logging.getLogger(__name__)
events = GatewayLogger(__name__)


class OrderState(Enum):
    """Order lifecycle state."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WORKING = "working"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({
    OrderState.REJECTED,
    OrderState.FILLED,
    OrderState.CANCELLED,
    OrderState.EXPIRED,
})

# WORKING -> WORKING is a partial fill
ORDER_TRANSITIONS: dict[OrderState, frozenset[OrderState]] = {
    OrderState.PENDING: frozenset({OrderState.ACCEPTED, OrderState.REJECTED}),
    OrderState.ACCEPTED: frozenset({
        OrderState.WORKING, OrderState.REJECTED, OrderState.FILLED,
        OrderState.CANCELLED, OrderState.EXPIRED,
    }),
    OrderState.WORKING: frozenset({
        OrderState.WORKING, OrderState.FILLED,
        OrderState.CANCELLED, OrderState.EXPIRED,
    }),
    OrderState.REJECTED: frozenset(),
    OrderState.FILLED: frozenset(),
    OrderState.CANCELLED: frozenset(),
    OrderState.EXPIRED: frozenset(),
}

_STATE_RANK = {
    OrderState.PENDING: 0,
    OrderState.ACCEPTED: 1,
    OrderState.WORKING: 2,
    OrderState.REJECTED: 3,
    OrderState.FILLED: 3,
    OrderState.CANCELLED: 3,
    OrderState.EXPIRED: 3,
}

# Tradier order event "status" -> tracker state
TRADIER_STATUS_MAP = {
    "pending": OrderState.ACCEPTED,
    "open": OrderState.WORKING,
    "partially_filled": OrderState.WORKING,
    "held": OrderState.WORKING,
    "filled": OrderState.FILLED,
    "canceled": OrderState.CANCELLED,
    "cancelled": OrderState.CANCELLED,
    "expired": OrderState.EXPIRED,
    "rejected": OrderState.REJECTED,
    "error": OrderState.REJECTED,
}


def _parse_timestamp(value: Any) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class OrderEvent:
    """A status update for one broker order.

    Attributes:
        broker_order_id: Broker-assigned order id
        state: Target state
        filled_quantity: Cumulative executed quantity
        avg_fill_price: Average fill price so far
        version: Sequence marker or transaction timestamp (epoch seconds)
        tag: Client tag echoed back by the broker (the correlation id)
        reason: Rejection reason, if any
    """
    broker_order_id: str
    state: OrderState
    filled_quantity: float = 0.0
    avg_fill_price: Optional[float] = None
    version: Optional[float] = None
    tag: Optional[str] = None
    reason: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_stream(cls, event: StreamEvent) -> Optional["OrderEvent"]:
        """Create an OrderEvent from an account stream event (None if unusable)."""
        if event.kind is not EventKind.ORDER:
            return None
        payload = event.payload
        status = str(payload.get("status", "")).lower()
        state = TRADIER_STATUS_MAP.get(status)
        if state is None:
            logger.debug(f"Ignoring order event with status {status!r}")
            return None

        version = float(event.sequence) if event.sequence is not None else _parse_timestamp(
            payload.get("transaction_date") or payload.get("create_date")
        )
        return cls(
            broker_order_id=str(payload.get("id")),
            state=state,
            filled_quantity=_to_float(payload.get("executed_quantity")) or 0.0,
            avg_fill_price=_to_float(payload.get("avg_fill_price")),
            version=version,
            tag=payload.get("tag") or None,
            reason=payload.get("reason_description") or payload.get("reason"),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class OrderView:
    """Read-only snapshot of a tracked order."""
    correlation_id: str
    broker_order_id: Optional[str]
    symbol: str
    side: str
    quantity: float
    order_type: str
    state: OrderState
    filled_quantity: float
    avg_fill_price: Optional[float]
    reject_reason: Optional[str]
    cancel_requested: bool
    in_flight: Optional[str]
    last_error: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def remaining_quantity(self) -> float:
        return max(0.0, self.quantity - self.filled_quantity)


@dataclass
class Order:
    """Mutable order record owned by the tracker."""
    correlation_id: str
    request: OrderRequest
    state: OrderState = OrderState.PENDING
    broker_order_id: Optional[str] = None
    filled_quantity: float = 0.0
    avg_fill_price: Optional[float] = None
    reject_reason: Optional[str] = None
    version: Optional[float] = None
    in_flight: Optional[str] = None
    cancel_requested: bool = False
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Monotonic time of the last change, used for retention
    touched: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def view(self) -> OrderView:
        return OrderView(
            correlation_id=self.correlation_id,
            broker_order_id=self.broker_order_id,
            symbol=self.request.symbol,
            side=self.request.side.value,
            quantity=self.request.quantity,
            order_type=self.request.order_type.value,
            state=self.state,
            filled_quantity=self.filled_quantity,
            avg_fill_price=self.avg_fill_price,
            reject_reason=self.reject_reason,
            cancel_requested=self.cancel_requested,
            in_flight=self.in_flight,
            last_error=self.last_error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


OrderCallback = Callable[[OrderView], None]


class OrderTracker:
    """
    Tracks orders from submission to a terminal state.

    Usage:
        tracker = OrderTracker(rest)
        tracker.attach(account_stream)
        tracker.on_update(lambda view: print(view.state))

        cid = await tracker.submit(OrderRequest("AAPL", OrderSide.BUY, 10))
        view = await tracker.wait_for_terminal(cid, timeout=30)
    """

    def __init__(
        self,
        rest: TradierREST,
        order_retention_seconds: float = DEFAULT_ORDER_RETENTION_SECONDS,
        pending_event_ttl: float = DEFAULT_PENDING_EVENT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the tracker.

        Args:
            rest: REST wrappers used for submit/cancel/modify
            order_retention_seconds: How long terminal orders stay queryable
            pending_event_ttl: How long events for unknown broker ids are kept
            clock: Monotonic time source
        """
        self._rest = rest
        self.order_retention_seconds = order_retention_seconds
        self.pending_event_ttl = pending_event_ttl
        self._clock = clock

        self._orders: dict[str, Order] = {}
        self._by_broker_id: dict[str, str] = {}
        # broker id -> [(expires_at, event)]
        self._unmatched: dict[str, list[tuple[float, OrderEvent]]] = {}
        self._callbacks: list[OrderCallback] = []
        self._terminal_waiters: dict[str, asyncio.Event] = {}

        self.events_applied = 0
        self.events_ignored = 0

    # =========================================================================
    # Queries and observers
    # =========================================================================

    def order_status(self, correlation_id: str) -> Optional[OrderView]:
        """Snapshot of an order, or None if unknown or already evicted."""
        self.prune()
        order = self._orders.get(correlation_id)
        return order.view() if order else None

    def find_by_broker_id(self, broker_order_id: str) -> Optional[OrderView]:
        cid = self._by_broker_id.get(broker_order_id)
        return self.order_status(cid) if cid else None

    def orders(self, include_terminal: bool = True) -> list[OrderView]:
        self.prune()
        return [
            o.view() for o in self._orders.values()
            if include_terminal or not o.is_terminal
        ]

    def on_update(self, callback: OrderCallback) -> None:
        """Register a callback invoked with an OrderView after every change."""
        self._callbacks.append(callback)

    async def wait_for_terminal(self, correlation_id: str, timeout: Optional[float] = None) -> OrderView:
        """Wait until the order reaches a terminal state.

        Raises:
            RequestError: Unknown correlation id
            asyncio.TimeoutError: `timeout` elapsed first
        """
        order = self._orders.get(correlation_id)
        if order is None:
            raise RequestError("Unknown order", order_id=correlation_id)
        if not order.is_terminal:
            waiter = self._terminal_waiters.setdefault(correlation_id, asyncio.Event())
            await asyncio.wait_for(waiter.wait(), timeout)
        return order.view()

    def attach(self, stream: StreamSessionManager) -> EventSubscriber:
        """Feed ORDER events from an account stream into the tracker."""
        return stream.on_event(self.handle_stream_event, kinds={EventKind.ORDER})

    def handle_stream_event(self, event: StreamEvent) -> None:
        order_event = OrderEvent.from_stream(event)
        if order_event is not None:
            self.apply_event(order_event)

    # =========================================================================
    # Mutating requests
    # =========================================================================

    def _new_correlation_id(self) -> str:
        # Tradier tags allow letters, digits and dashes
        return f"gw-{uuid.uuid4().hex[:24]}"

    async def submit(self, request: OrderRequest) -> str:
        """Submit a new order.

        The order is registered PENDING before the network round trip.

        Returns:
            Correlation id of the new order

        Raises:
            RequestError: Broker rejected the order (order is REJECTED)
            AuthError / TransientError: Submission outcome unknown; the order
                stays PENDING with `last_error` set and can still be adopted
                from a stream event carrying its tag. If such an event already
                arrived, the order is adopted and no error is raised
        """
        self.prune()
        correlation_id = self._new_correlation_id()
        order = Order(correlation_id=correlation_id, request=request, in_flight="submit")
        order.touched = self._clock()
        self._orders[correlation_id] = order
        logger.info(
            f"Submitting order {correlation_id}: {request.side.value} "
            f"{request.quantity} {request.symbol} {request.order_type.value}"
        )
        self._notify(order)

        try:
            ack = await self._rest.place_order(request, tag=correlation_id)
        except RequestError as e:
            order.in_flight = None
            order.reject_reason = e.message
            self._set_state(order, OrderState.REJECTED)
            if e.order_id is None:
                e.order_id = correlation_id
            raise
        except TradierAPIError as e:
            order.in_flight = None
            self.prune()
            broker_order_id = self._find_tagged_unmatched(correlation_id)
            if broker_order_id is not None:
                # The account stream already reported the order
                logger.warning(f"Order {correlation_id} submit failed but the broker has it: {e}")
                self._adopt(order, broker_order_id)
                return correlation_id
            order.last_error = str(e)
            self._touch(order)
            logger.error(f"Order {correlation_id} submission outcome unknown: {e}")
            self._notify(order)
            if e.order_id is None:
                e.order_id = correlation_id
            raise
        except BaseException:
            order.in_flight = None
            raise

        order.in_flight = None
        if order.broker_order_id is None:
            self._map_broker_id(order, ack.order_id)
        if order.state == OrderState.PENDING:
            self._set_state(order, OrderState.ACCEPTED)
        self._replay_unmatched(ack.order_id)
        return correlation_id

    def _check_mutable(self, correlation_id: str, operation: str) -> Order:
        self.prune()
        order = self._orders.get(correlation_id)
        if order is None:
            raise RequestError("Unknown order", order_id=correlation_id)
        if order.is_terminal:
            raise ConflictError(
                f"Cannot {operation}: order is {order.state.value}",
                order_id=correlation_id,
            )
        if order.in_flight is not None:
            raise ConflictError(
                f"Cannot {operation}: {order.in_flight} already in flight",
                order_id=correlation_id,
            )
        if order.broker_order_id is None:
            raise ConflictError(
                f"Cannot {operation}: broker order id not yet known",
                order_id=correlation_id,
            )
        return order

    async def cancel(self, correlation_id: str) -> OrderView:
        """Request cancellation. The final state still comes from the stream.

        Raises:
            ConflictError: Order terminal, busy, or not yet acknowledged
            RequestError: Unknown order or broker refused the cancel
        """
        order = self._check_mutable(correlation_id, "cancel")
        order.in_flight = "cancel"
        try:
            await self._rest.cancel_order(order.broker_order_id)
        except TradierAPIError as e:
            if e.order_id is None:
                e.order_id = correlation_id
            raise
        finally:
            order.in_flight = None

        order.cancel_requested = True
        self._touch(order)
        logger.info(f"Cancel requested for order {correlation_id} ({order.broker_order_id})")
        self._notify(order)
        return order.view()

    async def modify(
        self,
        correlation_id: str,
        order_type: Optional[OrderType] = None,
        duration: Optional[OrderDuration] = None,
        price: Optional[float] = None,
        stop: Optional[float] = None,
    ) -> OrderView:
        """Modify a working order's type, duration or prices.

        Raises:
            ConflictError: Order terminal, busy, or not yet acknowledged
            ValueError: The modified order would be invalid
        """
        order = self._check_mutable(correlation_id, "modify")

        changes = {}
        if order_type is not None:
            changes["order_type"] = OrderType(order_type)
        if duration is not None:
            changes["duration"] = OrderDuration(duration)
        if price is not None:
            changes["price"] = price
        if stop is not None:
            changes["stop"] = stop
        updated = replace(order.request, **changes)

        order.in_flight = "modify"
        try:
            await self._rest.modify_order(
                order.broker_order_id,
                order_type=order_type,
                duration=duration,
                price=price,
                stop=stop,
            )
        except TradierAPIError as e:
            if e.order_id is None:
                e.order_id = correlation_id
            raise
        finally:
            order.in_flight = None

        order.request = updated
        self._touch(order)
        logger.info(f"Order {correlation_id} modified: {changes}")
        self._notify(order)
        return order.view()

    # =========================================================================
    # Event application
    # =========================================================================

    def apply_event(self, event: OrderEvent) -> bool:
        """Apply a stream status event.

        Returns:
            True if the event changed the order
        """
        self.prune()
        correlation_id = self._by_broker_id.get(event.broker_order_id)

        if correlation_id is None:
            order = self._orders.get(event.tag) if event.tag else None
            if order is not None and order.in_flight != "submit" and order.broker_order_id is None:
                # The submit response was lost; adopt the mapping from the event
                self._adopt(order, event.broker_order_id)
                correlation_id = order.correlation_id
            else:
                self._buffer_unmatched(event)
                return False

        order = self._orders.get(correlation_id)
        if order is None:
            self.events_ignored += 1
            return False
        return self._apply_to_order(order, event)

    def _apply_to_order(self, order: Order, event: OrderEvent) -> bool:
        if order.is_terminal:
            self.events_ignored += 1
            return False

        newer = False
        if event.version is not None and order.version is not None:
            if event.version < order.version:
                logger.debug(f"Ignoring stale event for {order.correlation_id}")
                self.events_ignored += 1
                return False
            newer = event.version > order.version

        target = event.state
        forward = (
            _STATE_RANK[target] > _STATE_RANK[order.state]
            or event.filled_quantity > order.filled_quantity
        )
        if not forward and not newer:
            self.events_ignored += 1
            return False

        if target != order.state and target not in ORDER_TRANSITIONS[order.state]:
            if _STATE_RANK[target] < _STATE_RANK[order.state]:
                self.events_ignored += 1
                return False
            logger.warning(
                f"Illegal order transition {order.state.value} -> {target.value} "
                f"for {order.correlation_id}, ignoring"
            )
            self.events_ignored += 1
            return False

        if event.version is not None:
            order.version = max(event.version, order.version or event.version)
        order.filled_quantity = max(order.filled_quantity, event.filled_quantity)
        if target == OrderState.FILLED and order.filled_quantity == 0:
            order.filled_quantity = order.request.quantity
        if event.avg_fill_price is not None:
            order.avg_fill_price = event.avg_fill_price
        if target == OrderState.REJECTED and event.reason:
            order.reject_reason = str(event.reason)

        self.events_applied += 1
        if target != order.state:
            self._set_state(order, target)
        else:
            self._touch(order)
            events.order_transition(
                order.correlation_id, order.state.name, target.name,
                order.broker_order_id, order.filled_quantity,
            )
            self._notify(order)
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _map_broker_id(self, order: Order, broker_order_id: str) -> None:
        order.broker_order_id = broker_order_id
        self._by_broker_id[broker_order_id] = order.correlation_id

    def _buffer_unmatched(self, event: OrderEvent) -> None:
        expires_at = self._clock() + self.pending_event_ttl
        self._unmatched.setdefault(event.broker_order_id, []).append((expires_at, event))
        logger.debug(f"Buffered event for unknown broker order {event.broker_order_id}")

    def _replay_unmatched(self, broker_order_id: str) -> None:
        buffered = self._unmatched.pop(broker_order_id, [])
        for _, event in buffered:
            self.apply_event(event)

    def _find_tagged_unmatched(self, correlation_id: str) -> Optional[str]:
        """Broker id of buffered events echoing `correlation_id` as their tag."""
        for broker_order_id, buffered in self._unmatched.items():
            if any(event.tag == correlation_id for _, event in buffered):
                return broker_order_id
        return None

    def _adopt(self, order: Order, broker_order_id: str) -> None:
        """Take the broker id from a tagged event, then replay what was buffered for it."""
        logger.warning(f"Adopting broker id {broker_order_id} for order {order.correlation_id}")
        self._map_broker_id(order, broker_order_id)
        order.last_error = None
        if order.state == OrderState.PENDING:
            self._set_state(order, OrderState.ACCEPTED)
        self._replay_unmatched(broker_order_id)

    def _touch(self, order: Order) -> None:
        order.updated_at = datetime.now(timezone.utc)
        order.touched = self._clock()

    def _set_state(self, order: Order, new_state: OrderState) -> None:
        old_state = order.state
        order.state = new_state
        self._touch(order)
        events.order_transition(
            order.correlation_id, old_state.name, new_state.name,
            order.broker_order_id, order.filled_quantity,
        )
        self._notify(order)

        if order.is_terminal:
            waiter = self._terminal_waiters.pop(order.correlation_id, None)
            if waiter is not None:
                waiter.set()

    def _notify(self, order: Order) -> None:
        view = order.view()
        for callback in self._callbacks:
            try:
                callback(view)
            except Exception as e:
                logger.error(f"Order update callback error: {e}")

    def prune(self) -> int:
        """Evict terminal orders past retention and expired unmatched events."""
        now = self._clock()

        expired = [
            cid for cid, order in self._orders.items()
            if order.is_terminal and now - order.touched >= self.order_retention_seconds
        ]
        for cid in expired:
            order = self._orders.pop(cid)
            if order.broker_order_id is not None:
                self._by_broker_id.pop(order.broker_order_id, None)

        for broker_id in list(self._unmatched):
            kept = [(t, e) for t, e in self._unmatched[broker_id] if t > now]
            if kept:
                self._unmatched[broker_id] = kept
            else:
                logger.debug(f"Discarding unmatched events for broker order {broker_id}")
                del self._unmatched[broker_id]

        return len(expired)
