"""
Tradier streaming message codecs.

This module converts between the gateway's subscription/event model and the
JSON messages exchanged on Tradier's streaming WebSockets:

- Market events (wss://ws.tradier.com/v1/markets/events): quotes, trades,
  summaries, time & sales and extended trades for a set of symbols
- Account events (wss://ws.tradier.com/v1/accounts/events): order status
  updates for every account of the authenticated user

Decoding is done at the boundary into a closed set of event kinds. Unknown
fields are ignored; unknown message types and malformed JSON are logged and
dropped.

API Reference: https://documentation.tradier.com/brokerage-api/streaming
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


class DeliveryMode(str, Enum):
    """What a subscription asks the server to deliver for its key."""
    QUOTE = "quote"
    TRADE = "trade"
    SUMMARY = "summary"
    TIMESALE = "timesale"
    TRADEX = "tradex"
    ACCOUNT_EVENTS = "account_events"

    @property
    def is_market(self) -> bool:
        return self is not DeliveryMode.ACCOUNT_EVENTS


class EventKind(Enum):
    """Kinds of decoded stream events."""
    QUOTE = auto()
    TRADE = auto()
    SUMMARY = auto()
    TIMESALE = auto()
    TRADEX = auto()
    ORDER = auto()
    HEARTBEAT = auto()
    ERROR = auto()


# Market message "type" field -> event kind
MARKET_EVENT_KINDS = {
    "quote": EventKind.QUOTE,
    "trade": EventKind.TRADE,
    "summary": EventKind.SUMMARY,
    "timesale": EventKind.TIMESALE,
    "tradex": EventKind.TRADEX,
}

# Market event kind -> delivery mode that requests it
KIND_MODES = {kind: DeliveryMode(name) for name, kind in MARKET_EVENT_KINDS.items()}


@dataclass(frozen=True)
class StreamSubscription:
    """One entry of the desired-subscription set.

    Attributes:
        key: Symbol for market subscriptions, account number for account events
        mode: Delivery mode
    """
    key: str
    mode: DeliveryMode

    def __str__(self) -> str:
        return f"{self.key}:{self.mode.value}"


@dataclass
class StreamEvent:
    """A decoded message from a streaming session.

    Attributes:
        kind: Event kind
        key: Routing key (symbol or broker order id)
        payload: Decoded JSON object, unknown fields included
        sequence: Server sequence marker, if the feed has one
        received_at: Local reception time (UTC)
    """
    kind: EventKind
    key: Optional[str]
    payload: dict[str, Any]
    sequence: Optional[int] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _is_heartbeat(message: dict) -> bool:
    return message.get("type") == "heartbeat" or message.get("event") == "heartbeat"


def _split_frame(raw: str) -> Iterable[str]:
    # Sessions are opened with linebreak=true, so one frame may carry several messages
    for line in raw.splitlines():
        line = line.strip()
        if line:
            yield line


class StreamCodec:
    """Base codec: encodes control messages and decodes inbound frames.

    Subclasses set `name`, `supports_gap_fill` and `routes_by_subscription`
    and implement the encode and `decode_message` methods.
    """

    name = "stream"
    # True when the server can replay from a sequence marker on resubscribe
    supports_gap_fill = False
    # True when event keys are subscription keys (market data)
    routes_by_subscription = False

    def accepts(self, subscription: StreamSubscription) -> bool:
        raise NotImplementedError

    def encode_subscribe(
        self,
        subscription: StreamSubscription,
        session_id: Optional[str],
        active: frozenset[StreamSubscription],
        resume_from: Optional[int] = None,
    ) -> Optional[str]:
        """Build the message that adds `subscription`.

        Args:
            subscription: Entry being subscribed
            session_id: Streaming session id from authentication
            active: Every entry the server should hold after this message
            resume_from: Last seen sequence marker (gap-fill codecs only)

        Returns:
            Text message to send, or None if nothing needs sending
        """
        raise NotImplementedError

    def encode_unsubscribe(
        self,
        subscription: StreamSubscription,
        session_id: Optional[str],
        active: frozenset[StreamSubscription],
    ) -> Optional[str]:
        """Build the message that removes `subscription` (None if none exists)."""
        raise NotImplementedError

    def decode_message(self, message: dict) -> Optional[StreamEvent]:
        raise NotImplementedError

    def decode(self, raw: str) -> list[StreamEvent]:
        """Decode one inbound frame into zero or more events."""
        decoded = []
        for line in _split_frame(raw):
            try:
                message = json.loads(line)
            except ValueError:
                logger.warning(f"{self.name}: dropping malformed message: {line[:200]}")
                continue

            if not isinstance(message, dict):
                logger.warning(f"{self.name}: dropping non-object message: {line[:200]}")
                continue

            if _is_heartbeat(message):
                decoded.append(StreamEvent(kind=EventKind.HEARTBEAT, key=None, payload=message))
                continue

            if "error" in message:
                decoded.append(StreamEvent(kind=EventKind.ERROR, key=None, payload=message))
                continue

            event = self.decode_message(message)
            if event is None:
                logger.debug(f"{self.name}: dropping unknown message: {line[:200]}")
                continue
            decoded.append(event)

        return decoded


class TradierMarketCodec(StreamCodec):
    """Codec for the market events stream.

    Tradier replaces the streamed symbol set with every payload, so each
    control message carries the complete active set and the union of its
    filters.
    """

    name = "market"
    routes_by_subscription = True

    def __init__(
        self,
        linebreak: bool = True,
        valid_only: bool = False,
        advanced_details: bool = False,
    ):
        self.linebreak = linebreak
        self.valid_only = valid_only
        self.advanced_details = advanced_details

    def accepts(self, subscription: StreamSubscription) -> bool:
        return subscription.mode.is_market

    def _payload(self, session_id: Optional[str], active: frozenset[StreamSubscription]) -> str:
        symbols = sorted({s.key for s in active})
        filters = sorted({s.mode.value for s in active})
        return json.dumps({
            "symbols": symbols,
            "filter": filters,
            "sessionid": session_id,
            "linebreak": self.linebreak,
            "validOnly": self.valid_only,
            "advancedDetails": self.advanced_details,
        })

    def encode_subscribe(self, subscription, session_id, active, resume_from=None):
        return self._payload(session_id, active | {subscription})

    def encode_unsubscribe(self, subscription, session_id, active):
        remaining = active - {subscription}
        if not remaining:
            # An empty symbol list is rejected; stray events are filtered locally
            return None
        return self._payload(session_id, remaining)

    def decode_message(self, message: dict) -> Optional[StreamEvent]:
        kind = MARKET_EVENT_KINDS.get(message.get("type"))
        symbol = message.get("symbol")
        if kind is None or not symbol:
            return None
        return StreamEvent(kind=kind, key=str(symbol), payload=message)


class TradierAccountCodec(StreamCodec):
    """Codec for the account events stream (order status updates)."""

    name = "account"

    def __init__(self, exclude_accounts: Optional[list[str]] = None):
        self.exclude_accounts = list(exclude_accounts or [])

    def accepts(self, subscription: StreamSubscription) -> bool:
        return subscription.mode is DeliveryMode.ACCOUNT_EVENTS

    def encode_subscribe(self, subscription, session_id, active, resume_from=None):
        return json.dumps({
            "events": ["order"],
            "sessionid": session_id,
            "excludeAccounts": self.exclude_accounts,
        })

    def encode_unsubscribe(self, subscription, session_id, active):
        # Account sessions have no unsubscribe message
        return None

    def decode_message(self, message: dict) -> Optional[StreamEvent]:
        if message.get("event") != "order" or message.get("id") is None:
            return None
        return StreamEvent(kind=EventKind.ORDER, key=str(message["id"]), payload=message)
