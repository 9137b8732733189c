"""
Tradier Gateway.

Caller-facing facade that wires the core together:

    TokenBucket + CredentialStore -> RequestDispatcher -> TradierREST
    TradierREST -> stream authenticators -> market / account StreamSessionManagers
    account stream + TradierREST -> OrderTracker

Usage:
    config = TradierConfig.from_env()

    async with TradierGateway(config) as gateway:
        gateway.on_order_update(lambda view: print(view.state))
        await gateway.subscribe("SPY")

        cid = await gateway.submit_order(
            OrderRequest(symbol="SPY", side=OrderSide.BUY, quantity=1)
        )
        await gateway.wait_for_terminal(cid, timeout=30)
"""

import logging
import random
from typing import Iterable, Optional, Union

from tradier_gateway.api.client import HttpTransport, RequestDispatcher, TradierConfig
from tradier_gateway.api.credentials import CredentialStore, OAuthRefresher
from tradier_gateway.api.rate_limiter import TokenBucket
from tradier_gateway.api.rest import (
    OrderDuration,
    OrderRequest,
    OrderType,
    StreamKind,
    TradierREST,
)
from tradier_gateway.api.stream import (
    AiohttpStreamTransport,
    EventCallback,
    EventSubscriber,
    StreamSessionManager,
    StreamTransport,
    TradierStreamAuthenticator,
)
from tradier_gateway.api.stream_codec import (
    DeliveryMode,
    EventKind,
    TradierAccountCodec,
    TradierMarketCodec,
)
from tradier_gateway.trading.order_tracker import OrderCallback, OrderTracker, OrderView

logger = logging.getLogger(__name__)


class TradierGateway:
    """Single entry point for orders, market data and account events."""

    def __init__(
        self,
        config: TradierConfig,
        credential_store: Optional[CredentialStore] = None,
        http_transport: Optional[HttpTransport] = None,
        stream_transport: Optional[StreamTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Build every component from the config.

        Args:
            config: Gateway configuration
            credential_store: Pre-built credential store (built from config if omitted)
            http_transport: HTTP collaborator (aiohttp if omitted)
            stream_transport: Streaming collaborator (aiohttp if omitted)
            rng: Random source for backoff jitter
        """
        self.config = config

        self._refresher: Optional[OAuthRefresher] = None
        if credential_store is None:
            if config.refresh_token and config.client_id:
                self._refresher = OAuthRefresher(
                    config.client_id,
                    config.client_secret,
                    base_url=config.base_url,
                    timeout=config.request_timeout,
                )
            credential_store = CredentialStore(
                config.credential(),
                refresher=self._refresher,
                refresh_margin=config.credential_refresh_margin,
            )
        self.credentials = credential_store

        self.rate_limiter = TokenBucket(config.rate_limit_capacity, config.rate_limit_refill_per_sec)
        self.dispatcher = RequestDispatcher(
            config,
            self.credentials,
            rate_limiter=self.rate_limiter,
            transport=http_transport,
            rng=rng,
        )
        self.rest = TradierREST(self.dispatcher, config.account_id)

        self._owns_stream_transport = stream_transport is None
        self._stream_transport = stream_transport or AiohttpStreamTransport()

        self.market_stream = StreamSessionManager(
            "market",
            config.market_stream_url,
            self._stream_transport,
            TradierMarketCodec(),
            TradierStreamAuthenticator(self.rest, StreamKind.MARKET),
            config,
            credentials=self.credentials,
            rng=rng,
        )
        self.account_stream = StreamSessionManager(
            "account",
            config.account_stream_url,
            self._stream_transport,
            TradierAccountCodec(),
            TradierStreamAuthenticator(self.rest, StreamKind.ACCOUNT),
            config,
            credentials=self.credentials,
            rng=rng,
        )

        self.tracker = OrderTracker(
            self.rest,
            order_retention_seconds=config.order_retention_seconds,
            pending_event_ttl=config.pending_event_ttl,
        )
        self.tracker.attach(self.account_stream)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the account events stream.

        The market stream starts with the first `subscribe`.
        """
        await self.account_stream.subscribe(self.config.account_id or "*", DeliveryMode.ACCOUNT_EVENTS)
        await self.account_stream.start()
        logger.info("Gateway started")

    async def close(self) -> None:
        """Close both streams and release HTTP resources."""
        await self.market_stream.close()
        await self.account_stream.close()
        await self.dispatcher.close()
        if self._refresher is not None:
            await self._refresher.close()
        if self._owns_stream_transport:
            await self._stream_transport.close()
        logger.info("Gateway closed")

    async def wait_until_live(self, timeout: Optional[float] = None) -> None:
        """Wait until the account stream is LIVE."""
        await self.account_stream.wait_until_live(timeout)

    async def __aenter__(self) -> "TradierGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Orders
    # =========================================================================

    async def submit_order(self, request: OrderRequest) -> str:
        """Submit an order and return its correlation id."""
        return await self.tracker.submit(request)

    async def cancel_order(self, correlation_id: str) -> OrderView:
        return await self.tracker.cancel(correlation_id)

    async def modify_order(
        self,
        correlation_id: str,
        order_type: Optional[OrderType] = None,
        duration: Optional[OrderDuration] = None,
        price: Optional[float] = None,
        stop: Optional[float] = None,
    ) -> OrderView:
        return await self.tracker.modify(
            correlation_id,
            order_type=order_type,
            duration=duration,
            price=price,
            stop=stop,
        )

    def order_status(self, correlation_id: str) -> Optional[OrderView]:
        return self.tracker.order_status(correlation_id)

    def on_order_update(self, callback: OrderCallback) -> None:
        self.tracker.on_update(callback)

    async def wait_for_terminal(self, correlation_id: str, timeout: Optional[float] = None) -> OrderView:
        return await self.tracker.wait_for_terminal(correlation_id, timeout)

    # =========================================================================
    # Market data
    # =========================================================================

    async def subscribe(self, symbol: str, mode: Union[DeliveryMode, str] = DeliveryMode.QUOTE) -> bool:
        """Subscribe to market data for a symbol (starts the market stream)."""
        added = await self.market_stream.subscribe(symbol, mode)
        await self.market_stream.start()
        return added

    async def unsubscribe(self, symbol: str, mode: Union[DeliveryMode, str] = DeliveryMode.QUOTE) -> bool:
        return await self.market_stream.unsubscribe(symbol, mode)

    def on_event(
        self,
        callback: EventCallback,
        key: Optional[str] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> EventSubscriber:
        """Deliver market events to `callback`."""
        return self.market_stream.on_event(callback, key=key, kinds=kinds)

    def events(
        self,
        key: Optional[str] = None,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> EventSubscriber:
        """Async-iterable market event subscriber."""
        return self.market_stream.events(key=key, kinds=kinds)
