"""
Tradier Gateway.

Client-side integration layer for the Tradier brokerage API: a rate limited,
self-refreshing request dispatcher, reconnecting streaming sessions and an
order lifecycle tracker.
"""

from tradier_gateway.api import (
    TradierConfig,
    TradierAPIError,
    AuthError,
    TransientError,
    RequestError,
    ConflictError,
    StreamError,
    AmbiguousResponseError,
    OrderRequest,
    OrderSide,
    OrderType,
    OrderDuration,
    DeliveryMode,
    EventKind,
)
from tradier_gateway.trading import (
    OrderState,
    OrderView,
    TradierGateway,
)

__version__ = "0.1.0"

__all__ = [
    "TradierConfig",
    "TradierAPIError",
    "AuthError",
    "TransientError",
    "RequestError",
    "ConflictError",
    "StreamError",
    "AmbiguousResponseError",
    "OrderRequest",
    "OrderSide",
    "OrderType",
    "OrderDuration",
    "DeliveryMode",
    "EventKind",
    "OrderState",
    "OrderView",
    "TradierGateway",
]
