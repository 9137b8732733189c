"""
Order tracking and the caller-facing gateway.

Components:
- OrderTracker: Per-order state machine fed by REST acks and stream events
- TradierGateway: Wires dispatcher, streams and tracker together

Usage:
    from tradier_gateway.trading import TradierGateway

    async with TradierGateway(TradierConfig.from_env()) as gateway:
        cid = await gateway.submit_order(request)
        view = gateway.order_status(cid)
"""

from tradier_gateway.trading.order_tracker import (
    OrderState,
    ORDER_TRANSITIONS,
    TERMINAL_STATES,
    Order,
    OrderEvent,
    OrderView,
    OrderTracker,
)
from tradier_gateway.trading.gateway import TradierGateway

__all__ = [
    "OrderState",
    "ORDER_TRANSITIONS",
    "TERMINAL_STATES",
    "Order",
    "OrderEvent",
    "OrderView",
    "OrderTracker",
    "TradierGateway",
]
