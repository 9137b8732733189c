"""
Tradier REST API Endpoints.

This module provides the thin REST wrappers the gateway core needs:
- User profile and account information
- Order placement, modification and cancellation
- Streaming session creation (market and account events)

Responses are decoded only as far as the core needs them. Tradier returns a
single object where a list has one element, so list-shaped fields go through
`as_list()`.

API Reference: https://documentation.tradier.com/brokerage-api
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from tradier_gateway.api.client import RequestDispatcher, RequestOutcome
from tradier_gateway.api.errors import AmbiguousResponseError, RequestError
from tradier_gateway.lib.constants import (
    TRADIER_ACCOUNT_SESSION_PATH,
    TRADIER_MARKET_SESSION_PATH,
    TRADIER_USER_PROFILE_PATH,
)

logger = logging.getLogger(__name__)


def as_list(value: Any) -> list:
    """Normalise Tradier's "object or list" JSON shape to a list."""
    if value is None or value == "null":
        return []
    if isinstance(value, list):
        return value
    return [value]


class OrderSide(str, Enum):
    """Equity order sides."""
    BUY = "buy"
    SELL = "sell"
    BUY_TO_COVER = "buy_to_cover"
    SELL_SHORT = "sell_short"


class OrderType(str, Enum):
    """Order types supported by Tradier."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class OrderDuration(str, Enum):
    """Time in force."""
    DAY = "day"
    GTC = "gtc"
    PRE = "pre"
    POST = "post"


class StreamKind(str, Enum):
    """Streaming session families."""
    MARKET = "market"
    ACCOUNT = "account"


@dataclass
class OrderRequest:
    """A new order as submitted by the caller.

    Attributes:
        symbol: Equity symbol
        side: Order side
        quantity: Number of shares
        order_type: Market, limit, stop or stop limit
        duration: Time in force
        price: Limit price (required for LIMIT and STOP_LIMIT)
        stop: Stop price (required for STOP and STOP_LIMIT)
        order_class: Tradier order class
    """
    symbol: str
    side: OrderSide
    quantity: float
    order_type: OrderType = OrderType.MARKET
    duration: OrderDuration = OrderDuration.DAY
    price: Optional[float] = None
    stop: Optional[float] = None
    order_class: str = "equity"

    def __post_init__(self):
        self.side = OrderSide(self.side)
        self.order_type = OrderType(self.order_type)
        self.duration = OrderDuration(self.duration)
        if not self.symbol:
            raise ValueError("Order symbol is required")
        if self.quantity <= 0:
            raise ValueError(f"Order quantity must be positive, got {self.quantity}")
        if self.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and self.price is None:
            raise ValueError(f"Limit price required for {self.order_type.name} orders")
        if self.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and self.stop is None:
            raise ValueError(f"Stop price required for {self.order_type.name} orders")

    def to_form(self, tag: Optional[str] = None) -> dict[str, str]:
        """Build the form body Tradier expects for order placement."""
        form = {
            "class": self.order_class,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": _format_number(self.quantity),
            "type": self.order_type.value,
            "duration": self.duration.value,
        }
        if self.price is not None:
            form["price"] = _format_number(self.price)
        if self.stop is not None:
            form["stop"] = _format_number(self.stop)
        if tag:
            form["tag"] = tag
        return form


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


@dataclass
class OrderAck:
    """Acknowledgment returned by order placement/modification/cancellation.

    Attributes:
        order_id: Broker-assigned order id
        status: Tradier ack status ("ok" on success)
        partner_id: Partner id, if any
    """
    order_id: str
    status: str
    partner_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "OrderAck":
        """Create OrderAck from API response."""
        order = data.get("order") if isinstance(data, dict) else None
        if not isinstance(order, dict) or order.get("id") is None:
            raise AmbiguousResponseError("Malformed order acknowledgment", body=str(data))
        return cls(
            order_id=str(order["id"]),
            status=str(order.get("status", "")),
            partner_id=order.get("partner_id"),
        )

    @property
    def is_ok(self) -> bool:
        return self.status.lower() == "ok"


def _parse_ack(outcome: RequestOutcome, endpoint: str) -> OrderAck:
    """Decode an order ack; an unreadable 2xx body leaves the outcome unknown."""
    try:
        return OrderAck.from_api(outcome.json())
    except ValueError as e:
        raise AmbiguousResponseError(
            "Unreadable order acknowledgment",
            endpoint=endpoint,
            status_code=outcome.status,
            body=outcome.body,
        ) from e
    except AmbiguousResponseError as e:
        e.endpoint = endpoint
        e.status_code = outcome.status
        raise


@dataclass
class StreamSessionInfo:
    """Streaming session handed out by the REST API."""
    url: str
    session_id: str

    @classmethod
    def from_api(cls, data: dict) -> "StreamSessionInfo":
        stream = data.get("stream") if isinstance(data, dict) else None
        if not isinstance(stream, dict) or not stream.get("sessionid"):
            raise RequestError("Malformed stream session response", body=str(data))
        return cls(url=str(stream.get("url", "")), session_id=str(stream["sessionid"]))


@dataclass
class AccountSummary:
    """One account listed on the user profile."""
    account_number: str
    classification: str = ""
    account_type: str = ""
    status: str = ""
    day_trader: bool = False
    option_level: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "AccountSummary":
        return cls(
            account_number=str(data.get("account_number", "")),
            classification=str(data.get("classification", "")),
            account_type=str(data.get("type", "")),
            status=str(data.get("status", "")),
            day_trader=bool(data.get("day_trader", False)),
            option_level=int(data.get("option_level", 0) or 0),
        )


@dataclass
class UserProfile:
    """User profile with the accounts it owns."""
    id: str
    name: str
    accounts: list[AccountSummary] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> "UserProfile":
        profile = data.get("profile", {}) if isinstance(data, dict) else {}
        return cls(
            id=str(profile.get("id", "")),
            name=str(profile.get("name", "")),
            accounts=[AccountSummary.from_api(a) for a in as_list(profile.get("account"))],
        )


@dataclass
class AccountBalances:
    """Account balance summary.

    Attributes:
        account_number: Account number
        account_type: cash, margin or pdt
        total_equity: Total account equity
        total_cash: Total cash
        market_value: Market value of open positions
        open_pl: Open (unrealized) P&L
        close_pl: Closed (realized) P&L
        pending_orders_count: Number of open orders
    """
    account_number: str
    account_type: str
    total_equity: float = 0.0
    total_cash: float = 0.0
    market_value: float = 0.0
    open_pl: float = 0.0
    close_pl: float = 0.0
    pending_orders_count: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "AccountBalances":
        """Create AccountBalances from API response."""
        balances = data.get("balances", {}) if isinstance(data, dict) else {}
        return cls(
            account_number=str(balances.get("account_number", "")),
            account_type=str(balances.get("account_type", "")),
            total_equity=float(balances.get("total_equity", 0) or 0),
            total_cash=float(balances.get("total_cash", 0) or 0),
            market_value=float(balances.get("market_value", 0) or 0),
            open_pl=float(balances.get("open_pl", 0) or 0),
            close_pl=float(balances.get("close_pl", 0) or 0),
            pending_orders_count=int(balances.get("pending_orders_count", 0) or 0),
        )


@dataclass
class PositionData:
    """Position data structure.

    Attributes:
        symbol: Equity or option symbol
        quantity: Position size (negative = short)
        cost_basis: Total cost basis
        date_acquired: Acquisition timestamp as reported
    """
    symbol: str
    quantity: float
    cost_basis: float = 0.0
    date_acquired: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "PositionData":
        """Create PositionData from API response."""
        return cls(
            symbol=str(data.get("symbol", "")),
            quantity=float(data.get("quantity", 0)),
            cost_basis=float(data.get("cost_basis", 0) or 0),
            date_acquired=data.get("date_acquired"),
        )

    @property
    def is_long(self) -> bool:
        return self.quantity > 0

    @property
    def is_short(self) -> bool:
        return self.quantity < 0


class TradierREST:
    """Tradier REST API wrappers.

    Every call goes through the RequestDispatcher, so rate limiting,
    credential refresh and retries apply uniformly.

    Example:
        rest = TradierREST(dispatcher, account_id="VA000001")
        profile = await rest.get_user_profile()
        ack = await rest.place_order(
            OrderRequest(symbol="AAPL", side=OrderSide.BUY, quantity=10),
            tag="c-1",
        )
    """

    def __init__(self, dispatcher: RequestDispatcher, account_id: str):
        """Initialize REST API wrappers.

        Args:
            dispatcher: Request dispatcher
            account_id: Brokerage account number used for account endpoints
        """
        self._dispatcher = dispatcher
        self.account_id = account_id

    def _account_path(self, suffix: str = "") -> str:
        if not self.account_id:
            raise ValueError("No account ID available")
        return f"/v1/accounts/{self.account_id}{suffix}"

    async def get_user_profile(self) -> UserProfile:
        """Get the authenticated user's profile."""
        outcome = await self._dispatcher.execute("GET", TRADIER_USER_PROFILE_PATH)
        return UserProfile.from_api(outcome.json())

    async def get_account_balances(self) -> AccountBalances:
        """Get balances for the configured account."""
        outcome = await self._dispatcher.execute("GET", self._account_path("/balances"))
        return AccountBalances.from_api(outcome.json())

    async def get_account_positions(self) -> list[PositionData]:
        """Get open positions for the configured account."""
        outcome = await self._dispatcher.execute("GET", self._account_path("/positions"))
        data = outcome.json()
        positions = data.get("positions") if isinstance(data, dict) else None
        if not isinstance(positions, dict):
            return []
        return [PositionData.from_api(p) for p in as_list(positions.get("position"))]

    async def place_order(self, request: OrderRequest, tag: Optional[str] = None) -> OrderAck:
        """Place a new order.

        Args:
            request: Validated order request
            tag: Client tag (the tracker passes its correlation id)

        Returns:
            OrderAck with the broker order id

        Raises:
            RequestError: If Tradier rejects the order
            AmbiguousResponseError: Accepted with an unreadable body; the order may exist
        """
        logger.info(
            f"Placing {request.order_type.value} {request.side.value} order: "
            f"{request.quantity} {request.symbol}"
        )
        outcome = await self._dispatcher.execute(
            "POST", self._account_path("/orders"), body=request.to_form(tag)
        )
        ack = _parse_ack(outcome, self._account_path("/orders"))
        if not ack.is_ok:
            raise RequestError(
                f"Order rejected: status {ack.status}",
                endpoint=self._account_path("/orders"),
                order_id=ack.order_id,
                body=outcome.body,
            )
        logger.info(f"Order placed: {ack.order_id}")
        return ack

    async def cancel_order(self, order_id: str) -> OrderAck:
        """Cancel a working order."""
        logger.info(f"Cancelling order: {order_id}")
        path = self._account_path(f"/orders/{order_id}")
        outcome = await self._dispatcher.execute("DELETE", path)
        return _parse_ack(outcome, path)

    async def modify_order(
        self,
        order_id: str,
        order_type: Optional[OrderType] = None,
        duration: Optional[OrderDuration] = None,
        price: Optional[float] = None,
        stop: Optional[float] = None,
    ) -> OrderAck:
        """Modify a working order.

        Raises:
            ValueError: If no field to change is given
        """
        form = {}
        if order_type is not None:
            form["type"] = OrderType(order_type).value
        if duration is not None:
            form["duration"] = OrderDuration(duration).value
        if price is not None:
            form["price"] = _format_number(price)
        if stop is not None:
            form["stop"] = _format_number(stop)
        if not form:
            raise ValueError("modify_order requires at least one field to change")

        logger.info(f"Modifying order {order_id}: {form}")
        path = self._account_path(f"/orders/{order_id}")
        outcome = await self._dispatcher.execute("PUT", path, body=form)
        return _parse_ack(outcome, path)

    async def create_stream_session(
        self,
        kind: StreamKind,
        refresh_on_auth: bool = True,
    ) -> StreamSessionInfo:
        """Create a market or account streaming session.

        Args:
            kind: MARKET or ACCOUNT
            refresh_on_auth: Let the dispatcher refresh credentials on 401/403

        Returns:
            StreamSessionInfo carrying the session id for subscribe payloads
        """
        kind = StreamKind(kind)
        path = TRADIER_MARKET_SESSION_PATH if kind == StreamKind.MARKET else TRADIER_ACCOUNT_SESSION_PATH
        outcome = await self._dispatcher.execute("POST", path, refresh_on_auth=refresh_on_auth)
        session = StreamSessionInfo.from_api(outcome.json())
        logger.debug(f"Created {kind.value} stream session")
        return session
