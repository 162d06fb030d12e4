"""
Tests for backend/signal_bridge/exchange_clients/tradier_client.py
and the shared REST pipeline in rest_client.py

Uses httpx.MockTransport so no request leaves the process.
"""

from datetime import date
from urllib.parse import parse_qs

import httpx
import pytest

from signal_bridge.exceptions import AuthError, ExecutionFailed, VenueRejected
from signal_bridge.exchange_clients.base import ORDER_STATUS_FILLED, ORDER_STATUS_OPEN
from signal_bridge.exchange_clients.tradier_client import (
    TRADIER_LIVE_URL,
    TRADIER_SANDBOX_URL,
    TradierClient,
    TradierOptionsClient,
    as_list,
    normalize_order_status,
    to_occ_option_symbol,
)


def _make_client(handler, cls=TradierClient, **overrides):
    kwargs = {
        "account_id": "VA123",
        "access_token": "tok",
        "environment": "sandbox",
        "max_retries": 2,
        "retry_delay": 0,
        "transport": httpx.MockTransport(handler),
    }
    kwargs.update(overrides)
    return cls(**kwargs)


class Recorder:
    """MockTransport handler that replays canned responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, payload = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status, json=payload)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:

    def test_occ_symbol_from_string(self):
        assert to_occ_option_symbol("SPY", "2025-01-17", "call", 475) == "SPY250117C00475000"

    def test_occ_symbol_from_date_and_fractional_strike(self):
        assert to_occ_option_symbol("aapl", date(2024, 6, 21), "P", 182.5) == "AAPL240621P00182500"

    def test_occ_symbol_rejects_bad_date(self):
        with pytest.raises(ValueError):
            to_occ_option_symbol("SPY", "17/01/2025", "call", 475)

    @pytest.mark.parametrize("value,expected", [
        (None, []),
        ("null", []),
        ({"id": 1}, [{"id": 1}]),
        ([{"id": 1}, {"id": 2}], [{"id": 1}, {"id": 2}]),
    ])
    def test_as_list(self, value, expected):
        assert as_list(value) == expected

    def test_status_mapping(self):
        assert normalize_order_status("pending") == ORDER_STATUS_OPEN
        assert normalize_order_status("FILLED") == ORDER_STATUS_FILLED
        assert normalize_order_status(None) == ""


# ---------------------------------------------------------------------------
# Request pipeline
# ---------------------------------------------------------------------------


class TestRequestPipeline:

    def test_environment_selects_base_url(self):
        recorder = Recorder((200, {}))
        assert _make_client(recorder)._base_url == TRADIER_SANDBOX_URL
        assert _make_client(recorder, environment="live")._base_url == TRADIER_LIVE_URL

    @pytest.mark.asyncio
    async def test_bearer_header_sent(self):
        """Happy path: static token on every request."""
        recorder = Recorder((200, {"balances": {"total_equity": 1000, "cash_available": 400}}))
        client = _make_client(recorder)

        balance = await client.get_balance()

        assert balance == [{"asset": "USD", "balance": 1000.0, "available_balance": 400.0}]
        assert recorder.requests[0].headers["Authorization"] == "Bearer tok"
        assert recorder.requests[0].url.path.endswith("/accounts/VA123/balances")

    @pytest.mark.asyncio
    async def test_server_error_retried_then_execution_failed(self):
        """Failure: a persistent 500 is tried max_retries + 1 times."""
        recorder = Recorder((500, {"message": "boom"}))
        client = _make_client(recorder, max_retries=2)

        with pytest.raises(ExecutionFailed):
            await client.get_balance()

        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self):
        """Happy path: a 429 is transient and retried."""
        recorder = Recorder((429, {"message": "slow down"}), (200, {"balances": {"option_buying_power": 250}}))
        client = _make_client(recorder)

        assert await client.get_available_margin() == 250.0
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Failure: a 400 is tried once and raised as VenueRejected."""
        recorder = Recorder((400, {"errors": {"error": "Invalid quantity"}}))
        client = _make_client(recorder)

        with pytest.raises(VenueRejected) as exc_info:
            await client.place_market_order("AAPL", "BUY", 1)

        assert len(recorder.requests) == 1
        assert "Invalid quantity" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unauthorized_is_auth_error(self):
        """Failure: 401 maps to AuthError with no refresh for static tokens."""
        recorder = Recorder((401, {"fault": {"faultstring": "Invalid Access Token"}}))
        client = _make_client(recorder)

        with pytest.raises(AuthError) as exc_info:
            await client.get_positions()

        assert len(recorder.requests) == 1
        assert "Invalid Access Token" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        """Failure: connection errors are retried and end as ExecutionFailed."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        client = _make_client(handler, max_retries=1)

        with pytest.raises(ExecutionFailed):
            await client.get_balance()

        assert len(calls) == 2


# ---------------------------------------------------------------------------
# Positions and orders
# ---------------------------------------------------------------------------


class TestPositionsAndOrders:

    @pytest.mark.asyncio
    async def test_single_position_collapsed_to_dict(self):
        """Edge case: one position arrives as an object, not a list."""
        recorder = Recorder((200, {"positions": {"position": {"symbol": "AAPL", "quantity": 10, "cost_basis": 1500}}}))
        client = _make_client(recorder)

        positions = await client.get_positions()

        assert positions == [{
            "symbol": "AAPL",
            "side": "BUY",
            "quantity": 10.0,
            "entry_price": 150.0,
            "mark_price": None,
            "unrealized_pnl": 0.0,
        }]

    @pytest.mark.asyncio
    async def test_empty_positions_null_string(self):
        """Edge case: 'null' means no positions."""
        client = _make_client(Recorder((200, {"positions": "null"})))
        assert await client.get_positions() == []

    @pytest.mark.asyncio
    async def test_market_order_form_encoded(self):
        """Happy path: POST body is form-encoded with lowercase side."""
        recorder = Recorder((200, {"order": {"id": 77, "status": "ok"}}))
        client = _make_client(recorder)

        result = await client.place_market_order("AAPL", "BUY", 5)

        form = parse_qs(recorder.requests[0].content.decode())
        assert form["side"] == ["buy"]
        assert form["type"] == ["market"]
        assert form["class"] == ["equity"]
        assert result["order_id"] == "77"

    @pytest.mark.asyncio
    async def test_order_without_id_rejected(self):
        """Failure: a 200 without an order id is a rejection."""
        client = _make_client(Recorder((200, {"errors": "null"})))

        with pytest.raises(VenueRejected):
            await client.place_limit_order("AAPL", "SELL", 1, 200)

    @pytest.mark.asyncio
    async def test_open_orders_filtered(self):
        recorder = Recorder((200, {"orders": {"order": [
            {"id": 1, "symbol": "AAPL", "status": "open", "side": "sell", "type": "stop"},
            {"id": 2, "symbol": "AAPL", "status": "filled", "side": "buy", "type": "market"},
            {"id": 3, "symbol": "MSFT", "status": "pending", "side": "buy", "type": "limit"},
        ]}}))
        client = _make_client(recorder)

        orders = await client.get_open_orders("AAPL")

        assert [o["order_id"] for o in orders] == ["1"]
        assert orders[0]["type"] == "stop"


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class TestOptionsClient:

    @pytest.mark.asyncio
    async def test_otoco_legs_and_tag(self):
        """Happy path: indexed leg fields and a dash-only tag."""
        recorder = Recorder((200, {"order": {"id": 900, "status": "ok"}}))
        client = _make_client(recorder, cls=TradierOptionsClient)
        leg = {"underlying_symbol": "SPY", "option_symbol": "SPY261016C00495000", "quantity": 2}

        order = await client.create_otoco_order([
            {**leg, "side": "buy_to_open", "type": "limit", "price": 2.02},
            {**leg, "side": "sell_to_close", "type": "limit", "price": 3.03},
            {**leg, "side": "sell_to_close", "type": "stop", "stop": 1.33},
        ], tag="fixed_tp_sl")

        form = parse_qs(recorder.requests[0].content.decode())
        assert order["id"] == 900
        assert form["class"] == ["otoco"]
        assert form["tag"] == ["fixed-tp-sl"]
        assert form["side[0]"] == ["buy_to_open"]
        assert form["price[1]"] == ["3.03"]
        assert form["stop[2]"] == ["1.33"]
        assert "price[2]" not in form

    @pytest.mark.asyncio
    async def test_otoco_requires_legs(self):
        client = _make_client(Recorder((200, {})), cls=TradierOptionsClient)
        with pytest.raises(ValueError):
            await client.create_otoco_order([])

    @pytest.mark.asyncio
    async def test_option_market_order(self):
        recorder = Recorder((200, {"order": {"id": 5}}))
        client = _make_client(recorder, cls=TradierOptionsClient)

        await client.create_option_market_order("SPY", "SPY261016C00495000", 3, "buy_to_open", tag="time_1h_exit")

        form = parse_qs(recorder.requests[0].content.decode())
        assert form["class"] == ["option"]
        assert form["option_symbol"] == ["SPY261016C00495000"]
        assert form["tag"] == ["time-1h-exit"]

    @pytest.mark.asyncio
    async def test_order_legs_normalized(self):
        recorder = Recorder((200, {"order": {"id": 900, "status": "filled", "leg": [
            {"id": 901, "status": "filled", "side": "buy_to_open", "type": "limit", "avg_fill_price": "2.0",
             "exec_quantity": "2", "quantity": "2"},
            {"id": 902, "status": "open", "side": "sell_to_close", "type": "limit", "price": "3.03"},
        ]}}))
        client = _make_client(recorder, cls=TradierOptionsClient)

        result = await client.get_order_legs("900")

        assert result["order_id"] == "900"
        assert result["status"] == ORDER_STATUS_FILLED
        assert [leg["order_id"] for leg in result["legs"]] == ["901", "902"]
        assert result["legs"][0]["avg_fill_price"] == 2.0
        assert result["legs"][0]["filled_quantity"] == 2.0
        assert result["legs"][1]["status"] == ORDER_STATUS_OPEN

    @pytest.mark.asyncio
    async def test_plain_order_reported_as_single_leg(self):
        """Edge case: a non-combo order is its own leg."""
        recorder = Recorder((200, {"order": {"id": 5, "status": "filled", "side": "buy_to_open"}}))
        client = _make_client(recorder, cls=TradierOptionsClient)

        result = await client.get_order_legs("5")

        assert len(result["legs"]) == 1
        assert result["legs"][0]["order_id"] == "5"

    @pytest.mark.asyncio
    async def test_expirations_list(self):
        recorder = Recorder((200, {"expirations": {"date": ["2026-10-16", "2026-10-23"]}}))
        client = _make_client(recorder, cls=TradierOptionsClient)

        assert await client.get_option_expirations("SPY") == ["2026-10-16", "2026-10-23"]
        assert recorder.requests[0].url.params["symbol"] == "SPY"

    @pytest.mark.asyncio
    async def test_quotes_missing_rejected(self):
        client = _make_client(Recorder((200, {"quotes": {"unmatched_symbols": {"symbol": "X"}}})), cls=TradierOptionsClient)
        with pytest.raises(VenueRejected):
            await client.get_quotes(["X"])

    @pytest.mark.asyncio
    async def test_option_chain(self):
        recorder = Recorder((200, {"options": {"option": {"symbol": "SPY261016C00495000", "strike": 495.0}}}))
        client = _make_client(recorder, cls=TradierOptionsClient)

        chain = await client.get_option_chain("SPY", "2026-10-16")

        assert chain == [{"symbol": "SPY261016C00495000", "strike": 495.0}]
        assert recorder.requests[0].url.params["expiration"] == "2026-10-16"
