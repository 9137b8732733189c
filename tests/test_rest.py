"""
Tests for the Tradier REST wrappers.
"""

import pytest

from conftest import json_response

from tradier_gateway.api.client import HttpResponse, RequestDispatcher
from tradier_gateway.api.errors import AmbiguousResponseError, RequestError
from tradier_gateway.api.rest import (
    OrderAck,
    OrderDuration,
    OrderRequest,
    OrderSide,
    OrderType,
    StreamKind,
    StreamSessionInfo,
    TradierREST,
    as_list,
)


@pytest.fixture
def rest(config, credential_store, http_transport):
    dispatcher = RequestDispatcher(config, credential_store, transport=http_transport)
    return TradierREST(dispatcher, config.account_id)


def _ack(order_id=123, status="ok"):
    return json_response(200, {"order": {"id": order_id, "status": status, "partner_id": "p-1"}})


# =============================================================================
# Models
# =============================================================================

class TestModels:
    """Tests for request and response models."""

    def test_as_list(self):
        assert as_list(None) == []
        assert as_list("null") == []
        assert as_list({"a": 1}) == [{"a": 1}]
        assert as_list([1, 2]) == [1, 2]

    def test_order_request_coerces_strings(self):
        request = OrderRequest(symbol="SPY", side="buy", quantity=10, order_type="limit", price=400.5)
        assert request.side is OrderSide.BUY
        assert request.order_type is OrderType.LIMIT
        assert request.duration is OrderDuration.DAY

    @pytest.mark.parametrize("kwargs", [
        {"symbol": "", "side": "buy", "quantity": 1},
        {"symbol": "SPY", "side": "buy", "quantity": 0},
        {"symbol": "SPY", "side": "hold", "quantity": 1},
        {"symbol": "SPY", "side": "buy", "quantity": 1, "order_type": "limit"},
        {"symbol": "SPY", "side": "buy", "quantity": 1, "order_type": "stop"},
        {"symbol": "SPY", "side": "buy", "quantity": 1, "order_type": "stop_limit", "price": 1.0},
    ])
    def test_order_request_validation(self, kwargs):
        with pytest.raises(ValueError):
            OrderRequest(**kwargs)

    def test_to_form(self):
        request = OrderRequest(
            symbol="AAPL",
            side=OrderSide.SELL,
            quantity=10.0,
            order_type=OrderType.STOP_LIMIT,
            duration=OrderDuration.GTC,
            price=150.25,
            stop=151,
        )
        assert request.to_form(tag="gw-abc") == {
            "class": "equity",
            "symbol": "AAPL",
            "side": "sell",
            "quantity": "10",
            "type": "stop_limit",
            "duration": "gtc",
            "price": "150.25",
            "stop": "151",
            "tag": "gw-abc",
        }

    def test_to_form_omits_optional(self):
        form = OrderRequest(symbol="SPY", side="buy", quantity=1).to_form()
        assert "price" not in form
        assert "stop" not in form
        assert "tag" not in form

    def test_order_ack_malformed(self):
        with pytest.raises(AmbiguousResponseError):
            OrderAck.from_api({"order": {"status": "ok"}})
        with pytest.raises(AmbiguousResponseError):
            OrderAck.from_api({"errors": {"error": ["nope"]}})

    def test_stream_session_parse(self):
        info = StreamSessionInfo.from_api({
            "stream": {"url": "https://stream.tradier.com/v1/markets/events", "sessionid": "abc"}
        })
        assert info.session_id == "abc"

    def test_stream_session_malformed(self):
        with pytest.raises(RequestError):
            StreamSessionInfo.from_api({"stream": {}})


# =============================================================================
# Endpoints
# =============================================================================

class TestTradierREST:
    """Tests for endpoint wrappers against the fake transport."""

    @pytest.mark.asyncio
    async def test_place_order(self, rest, http_transport):
        http_transport.queue(_ack(123))

        ack = await rest.place_order(OrderRequest(symbol="SPY", side="buy", quantity=5), tag="gw-1")

        assert ack.order_id == "123"
        assert ack.is_ok
        call = http_transport.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "https://api.test/v1/accounts/VA000001/orders"
        assert call["body"]["tag"] == "gw-1"
        assert call["body"]["quantity"] == "5"

    @pytest.mark.asyncio
    async def test_place_order_not_ok(self, rest, http_transport):
        http_transport.queue(_ack(124, status="rejected"))

        with pytest.raises(RequestError) as exc_info:
            await rest.place_order(OrderRequest(symbol="SPY", side="buy", quantity=5))
        assert exc_info.value.order_id == "124"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        HttpResponse(status=200, headers={}, body="<html>gateway</html>"),
        json_response(200, {"order": {"status": "ok"}}),
    ])
    async def test_place_order_unreadable_ack(self, rest, http_transport, response):
        http_transport.queue(response)

        with pytest.raises(AmbiguousResponseError) as exc_info:
            await rest.place_order(OrderRequest(symbol="SPY", side="buy", quantity=5))
        assert exc_info.value.endpoint == "/v1/accounts/VA000001/orders"
        assert exc_info.value.status_code == 200
        assert not isinstance(exc_info.value, RequestError)

    @pytest.mark.asyncio
    async def test_cancel_order(self, rest, http_transport):
        http_transport.queue(_ack(123))

        ack = await rest.cancel_order("123")

        assert ack.order_id == "123"
        call = http_transport.calls[0]
        assert call["method"] == "DELETE"
        assert call["url"].endswith("/v1/accounts/VA000001/orders/123")

    @pytest.mark.asyncio
    async def test_modify_order(self, rest, http_transport):
        http_transport.queue(_ack(123))

        await rest.modify_order("123", order_type="limit", price=10.5, duration=OrderDuration.GTC)

        call = http_transport.calls[0]
        assert call["method"] == "PUT"
        assert call["body"] == {"type": "limit", "duration": "gtc", "price": "10.5"}

    @pytest.mark.asyncio
    async def test_modify_order_requires_fields(self, rest, http_transport):
        with pytest.raises(ValueError):
            await rest.modify_order("123")
        assert http_transport.calls == []

    @pytest.mark.asyncio
    async def test_create_stream_sessions(self, rest, http_transport):
        http_transport.queue(
            json_response(200, {"stream": {"url": "u", "sessionid": "m-1"}}),
            json_response(200, {"stream": {"url": "u", "sessionid": "a-1"}}),
        )

        market = await rest.create_stream_session(StreamKind.MARKET)
        account = await rest.create_stream_session("account")

        assert market.session_id == "m-1"
        assert account.session_id == "a-1"
        assert http_transport.calls[0]["url"].endswith("/v1/markets/events/session")
        assert http_transport.calls[1]["url"].endswith("/v1/accounts/events/session")

    @pytest.mark.asyncio
    async def test_user_profile_single_account(self, rest, http_transport):
        http_transport.queue(json_response(200, {
            "profile": {
                "id": "id-1",
                "name": "Test User",
                "account": {
                    "account_number": "VA000001",
                    "classification": "individual",
                    "type": "margin",
                    "status": "active",
                    "day_trader": False,
                    "option_level": 2,
                },
            }
        }))

        profile = await rest.get_user_profile()

        assert profile.name == "Test User"
        assert len(profile.accounts) == 1
        assert profile.accounts[0].account_type == "margin"
        assert profile.accounts[0].option_level == 2

    @pytest.mark.asyncio
    async def test_positions(self, rest, http_transport):
        http_transport.queue(json_response(200, {
            "positions": {"position": [
                {"symbol": "SPY", "quantity": 10, "cost_basis": 4000},
                {"symbol": "QQQ", "quantity": -5, "cost_basis": -1500},
            ]}
        }))

        positions = await rest.get_account_positions()

        assert [p.symbol for p in positions] == ["SPY", "QQQ"]
        assert positions[0].is_long
        assert positions[1].is_short

    @pytest.mark.asyncio
    async def test_positions_null(self, rest, http_transport):
        http_transport.queue(json_response(200, {"positions": "null"}))
        assert await rest.get_account_positions() == []

    @pytest.mark.asyncio
    async def test_balances(self, rest, http_transport):
        http_transport.queue(json_response(200, {
            "balances": {
                "account_number": "VA000001",
                "account_type": "margin",
                "total_equity": 17798.36,
                "total_cash": 1000,
                "pending_orders_count": 2,
            }
        }))

        balances = await rest.get_account_balances()

        assert balances.total_equity == pytest.approx(17798.36)
        assert balances.pending_orders_count == 2
        assert balances.open_pl == 0.0

    @pytest.mark.asyncio
    async def test_missing_account_id(self, config, credential_store, http_transport):
        dispatcher = RequestDispatcher(config, credential_store, transport=http_transport)
        rest = TradierREST(dispatcher, "")

        with pytest.raises(ValueError, match="No account ID"):
            await rest.get_account_balances()
        assert http_transport.calls == []
