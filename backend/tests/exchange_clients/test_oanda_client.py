"""
Tests for backend/signal_bridge/exchange_clients/oanda_client.py
"""

import json

import httpx
import pytest

from signal_bridge.exceptions import VenueRejected
from signal_bridge.exchange_clients.base import ORDER_STATUS_FILLED, ORDER_STATUS_OPEN
from signal_bridge.exchange_clients.oanda_client import (
    OANDA_LIVE_URL,
    OANDA_PRACTICE_URL,
    OandaClient,
    format_price,
    from_oanda_instrument,
    to_oanda_instrument,
)


def _make_client(payload, status=200, requests=None, **overrides):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(status, json=payload)

    kwargs = {
        "account_id": "001-001-1-001",
        "access_token": "tok",
        "max_retries": 0,
        "retry_delay": 0,
        "transport": httpx.MockTransport(handler),
    }
    kwargs.update(overrides)
    return OandaClient(**kwargs)


class TestInstruments:

    @pytest.mark.parametrize("symbol,expected", [
        ("EURUSD", "EUR_USD"),
        ("EUR-USD", "EUR_USD"),
        ("EUR_USD", "EUR_USD"),
        ("USDJPY", "USD_JPY"),
    ])
    def test_to_oanda_instrument(self, symbol, expected):
        assert to_oanda_instrument(symbol) == expected

    def test_from_oanda_instrument(self):
        assert from_oanda_instrument("GBP_USD") == "GBPUSD"

    def test_price_format_by_quote(self):
        assert format_price("EUR_USD", 1.1) == "1.10000"
        assert format_price("USD_JPY", 151.2) == "151.200"

    def test_precision_hooks(self):
        client = _make_client({})
        assert client.quantity_precision("EURUSD") == 0
        assert client.price_precision("USDJPY") == 3
        assert client.price_precision("EURUSD") == 5

    def test_environment_selects_base_url(self):
        assert _make_client({})._base_url == OANDA_PRACTICE_URL
        assert _make_client({}, environment="live")._base_url == OANDA_LIVE_URL


class TestOandaTrading:

    @pytest.mark.asyncio
    async def test_account_scoped_url_and_headers(self):
        requests = []
        client = _make_client({"account": {"marginAvailable": "950.5"}}, requests=requests)

        assert await client.get_available_margin() == 950.5
        assert requests[0].url.path == "/v3/accounts/001-001-1-001/summary"
        assert requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_ticker_is_mid_price(self):
        client = _make_client({"prices": [{"bids": [{"price": "1.1000"}], "asks": [{"price": "1.1002"}]}]})

        ticker = await client.get_ticker("EURUSD")

        assert ticker["price"] == pytest.approx(1.1001)

    @pytest.mark.asyncio
    async def test_positions_net_legs(self):
        client = _make_client({"positions": [
            {"instrument": "EUR_USD", "long": {"units": "0"}, "short": {"units": "-1000", "averagePrice": "1.09"},
             "unrealizedPL": "-3.5"},
            {"instrument": "GBP_USD", "long": {"units": "0"}, "short": {"units": "0"}},
        ]})

        positions = await client.get_positions()

        assert positions == [{
            "symbol": "EURUSD",
            "side": "SELL",
            "quantity": 1000.0,
            "entry_price": 1.09,
            "mark_price": None,
            "unrealized_pnl": -3.5,
        }]

    @pytest.mark.asyncio
    async def test_sell_market_order_negative_units(self):
        """Happy path: direction is carried by the sign of units."""
        requests = []
        client = _make_client({"orderFillTransaction": {"orderID": "55"}}, requests=requests)

        result = await client.place_market_order("EURUSD", "SELL", 1000)

        body = json.loads(requests[0].content)
        assert body["order"]["units"] == "-1000"
        assert body["order"]["instrument"] == "EUR_USD"
        assert body["order"]["timeInForce"] == "FOK"
        assert result == {"order_id": "55", "status": ORDER_STATUS_FILLED, "raw": {"orderFillTransaction": {"orderID": "55"}}}

    @pytest.mark.asyncio
    async def test_stop_loss_reduce_only(self):
        requests = []
        client = _make_client({"orderCreateTransaction": {"id": "60"}}, requests=requests)

        result = await client.place_stop_loss("USDJPY", "BUY", 500, 152.5)

        order = json.loads(requests[0].content)["order"]
        assert order["type"] == "STOP"
        assert order["price"] == "152.500"
        assert order["positionFill"] == "REDUCE_ONLY"
        assert result["status"] == ORDER_STATUS_OPEN

    @pytest.mark.asyncio
    async def test_trailing_stop_attached_to_newest_trade(self):
        """Happy path: the trail binds to the latest long trade on the instrument."""
        requests = []
        trades = {"trades": [
            {"id": "101", "instrument": "EUR_USD", "currentUnits": "1000"},
            {"id": "105", "instrument": "EUR_USD", "currentUnits": "2000"},
            {"id": "107", "instrument": "EUR_USD", "currentUnits": "-500"},
            {"id": "109", "instrument": "GBP_USD", "currentUnits": "1000"},
        ]}

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/openTrades"):
                return httpx.Response(200, json=trades)
            return httpx.Response(200, json={"orderCreateTransaction": {"id": "61"}})

        client = _make_client({}, transport=httpx.MockTransport(handler))

        result = await client.place_trailing_stop("EURUSD", "SELL", 2000, distance=0.0015, callback_rate=0.14)

        order = json.loads(requests[1].content)["order"]
        assert order == {
            "type": "TRAILING_STOP_LOSS",
            "tradeID": "105",
            "distance": "0.00150",
            "timeInForce": "GTC",
        }
        assert result["order_id"] == "61"

    @pytest.mark.asyncio
    async def test_trailing_stop_without_trade_rejected(self):
        """Failure: no matching open trade means nothing to trail."""
        client = _make_client({"trades": []})

        assert client.supports_trailing_stop is True
        with pytest.raises(VenueRejected):
            await client.place_trailing_stop("EURUSD", "SELL", 1000, distance=0.001)

    @pytest.mark.asyncio
    async def test_cancelled_order_rejected(self):
        """Failure: an orderCancelTransaction means the venue refused the order."""
        client = _make_client({"orderCancelTransaction": {"reason": "INSUFFICIENT_MARGIN"}})

        with pytest.raises(VenueRejected) as exc_info:
            await client.place_market_order("EURUSD", "BUY", 1000)

        assert exc_info.value.venue_code == "INSUFFICIENT_MARGIN"

    @pytest.mark.asyncio
    async def test_close_uses_position_endpoint(self):
        """Edge case: a SELL close takes off long units only."""
        requests = []
        client = _make_client({"longOrderFillTransaction": {"id": "70"}}, requests=requests)

        result = await client.close_position("EURUSD", "SELL", 1000)

        assert requests[0].method == "PUT"
        assert requests[0].url.path.endswith("/positions/EUR_USD/close")
        assert json.loads(requests[0].content) == {"longUnits": "1000"}
        assert result["order_id"] == "70"

    @pytest.mark.asyncio
    async def test_error_message_extracted(self):
        client = _make_client({"errorCode": "MARKET_HALTED", "errorMessage": "Market is halted"}, status=400)

        with pytest.raises(VenueRejected) as exc_info:
            await client.place_market_order("EURUSD", "BUY", 1)

        assert exc_info.value.venue_code == "MARKET_HALTED"
        assert "Market is halted" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_open_orders_filtered_by_symbol(self):
        client = _make_client({"orders": [
            {"id": "1", "instrument": "EUR_USD", "units": "-1000", "type": "STOP", "state": "PENDING", "price": "1.08"},
            {"id": "2", "instrument": "GBP_USD", "units": "1000", "type": "LIMIT", "state": "PENDING"},
        ]})

        orders = await client.get_open_orders("EURUSD")

        assert len(orders) == 1
        assert orders[0]["side"] == "SELL"
        assert orders[0]["status"] == ORDER_STATUS_OPEN
        assert orders[0]["price"] == 1.08
