"""
End-to-end tests for TradierGateway over fake HTTP and streaming transports.
"""

import asyncio

import pytest

from conftest import FakeHttpTransport, FakeStreamTransport, json_response

from tradier_gateway.api.credentials import OAuthRefresher
from tradier_gateway.api.errors import AuthError
from tradier_gateway.api.rest import OrderRequest, OrderSide
from tradier_gateway.api.stream import StreamState
from tradier_gateway.api.stream_codec import EventKind
from tradier_gateway.trading.gateway import TradierGateway
from tradier_gateway.trading.order_tracker import OrderState


def tradier_routes(call):
    """Minimal Tradier API double."""
    method, url = call["method"], call["url"]

    if url.endswith("/v1/accounts/events/session"):
        return json_response(200, {"stream": {"url": "wss://ws.test/v1/accounts/events", "sessionid": "acct-sess"}})
    if url.endswith("/v1/markets/events/session"):
        return json_response(200, {"stream": {"url": "https://stream.test/v1/markets/events", "sessionid": "mkt-sess"}})
    if method == "POST" and url.endswith("/v1/accounts/VA000001/orders"):
        return json_response(200, {"order": {"id": 2001, "status": "ok"}})
    if method == "DELETE" and url.endswith("/v1/accounts/VA000001/orders/2001"):
        return json_response(200, {"order": {"id": 2001, "status": "ok"}})
    return json_response(404, {"errors": {"error": [f"no route for {method} {url}"]}})


@pytest.fixture
def http_transport():
    return FakeHttpTransport(handler=tradier_routes)


@pytest.fixture
def gateway(config, http_transport, stream_transport):
    return TradierGateway(config, http_transport=http_transport, stream_transport=stream_transport)


class TestGatewayEndToEnd:
    """Order flow and market data through the public facade."""

    @pytest.mark.asyncio
    async def test_order_filled_via_account_stream(self, gateway, stream_transport):
        updates = []
        gateway.on_order_update(updates.append)

        await gateway.start()
        await gateway.wait_until_live(timeout=2.0)

        account_connection = stream_transport.connections[0]
        assert stream_transport.urls[0] == "wss://ws.test/v1/accounts/events"
        assert account_connection.sent_json[0] == {
            "events": ["order"],
            "sessionid": "acct-sess",
            "excludeAccounts": [],
        }

        cid = await gateway.submit_order(OrderRequest(symbol="SPY", side=OrderSide.BUY, quantity=10))
        assert gateway.order_status(cid).state == OrderState.ACCEPTED

        account_connection.feed(
            {"event": "order", "id": 2001, "status": "partially_filled", "executed_quantity": 4, "tag": cid},
            {"event": "order", "id": 2001, "status": "filled", "executed_quantity": 10,
             "avg_fill_price": 401.25, "tag": cid},
        )

        view = await gateway.wait_for_terminal(cid, timeout=2.0)
        assert view.state == OrderState.FILLED
        assert view.filled_quantity == 10
        assert view.avg_fill_price == 401.25
        assert [u.state for u in updates] == [
            OrderState.PENDING,
            OrderState.ACCEPTED,
            OrderState.WORKING,
            OrderState.FILLED,
        ]

        await gateway.close()

    @pytest.mark.asyncio
    async def test_cancel_confirmed_by_stream(self, gateway, stream_transport, http_transport):
        await gateway.start()
        await gateway.wait_until_live(timeout=2.0)

        cid = await gateway.submit_order(OrderRequest(symbol="SPY", side="buy", quantity=1))
        view = await gateway.cancel_order(cid)
        assert view.cancel_requested
        assert http_transport.calls[-1]["method"] == "DELETE"

        stream_transport.connections[0].feed({"event": "order", "id": 2001, "status": "canceled"})
        view = await gateway.wait_for_terminal(cid, timeout=2.0)
        assert view.state == OrderState.CANCELLED

        await gateway.close()

    @pytest.mark.asyncio
    async def test_market_data_subscription(self, gateway, stream_transport, wait_until):
        await gateway.start()
        await gateway.wait_until_live(timeout=2.0)
        assert gateway.market_stream.state == StreamState.DISCONNECTED

        quotes = []
        gateway.on_event(quotes.append, key="SPY", kinds={EventKind.QUOTE})
        assert await gateway.subscribe("SPY")
        await gateway.market_stream.wait_until_live(timeout=2.0)

        market_connection = stream_transport.connections[1]
        assert market_connection.sent_json[0]["symbols"] == ["SPY"]
        assert market_connection.sent_json[0]["sessionid"] == "mkt-sess"

        market_connection.feed({"type": "quote", "symbol": "SPY", "bid": 400.1, "ask": 400.2})
        await wait_until(lambda: len(quotes) == 1)
        assert quotes[0].payload["ask"] == 400.2

        assert await gateway.unsubscribe("SPY")
        await gateway.close()

    @pytest.mark.asyncio
    async def test_close_releases_resources(self, gateway, stream_transport, http_transport):
        async with gateway:
            await gateway.wait_until_live(timeout=2.0)

        assert gateway.account_stream.state == StreamState.CLOSED
        assert gateway.market_stream.state == StreamState.CLOSED
        assert http_transport.closed
        # Caller-provided transports are not owned by the gateway
        assert not stream_transport.closed


class TestGatewayWiring:
    """Tests for component construction from config."""

    @pytest.mark.asyncio
    async def test_oauth_refresher_wired_when_configured(self, config):
        config.refresh_token = "refresh-1"
        config.client_id = "client"
        config.client_secret = "secret"

        gateway = TradierGateway(config, http_transport=FakeHttpTransport(), stream_transport=FakeStreamTransport())

        assert isinstance(gateway._refresher, OAuthRefresher)
        assert gateway.credentials.can_refresh
        assert gateway.rate_limiter is gateway.dispatcher.rate_limiter
        await gateway.close()

    @pytest.mark.asyncio
    async def test_no_refresher_without_refresh_token(self, config):
        gateway = TradierGateway(config, http_transport=FakeHttpTransport(), stream_transport=FakeStreamTransport())
        assert not gateway.credentials.can_refresh
        await gateway.close()

    @pytest.mark.asyncio
    async def test_explicit_credential_store(self, config, credential_store):
        gateway = TradierGateway(
            config,
            credential_store=credential_store,
            http_transport=FakeHttpTransport(),
            stream_transport=FakeStreamTransport(),
        )
        assert gateway.credentials is credential_store
        assert gateway.dispatcher.credentials is credential_store
        await gateway.close()

    @pytest.mark.asyncio
    async def test_fatal_stream_error_surfaces(self, config, stream_transport):
        def reject_sessions(call):
            return json_response(401, {"fault": {"faultstring": "Invalid Access Token"}})

        gateway = TradierGateway(
            config,
            http_transport=FakeHttpTransport(handler=reject_sessions),
            stream_transport=stream_transport,
        )
        await gateway.start()

        with pytest.raises(AuthError, match="Invalid Access Token"):
            await gateway.wait_until_live(timeout=2.0)
        assert gateway.account_stream.state == StreamState.DISCONNECTED

        await asyncio.wait_for(gateway.close(), timeout=2.0)
