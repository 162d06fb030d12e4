"""
Tests for backend/signal_bridge/exchange_clients/aster_client.py
and aster_v3_client.py

Covers HMAC query signing, EIP-712 signing, symbol mapping and order
normalization against an httpx.MockTransport.
"""

import hashlib
import hmac
from urllib.parse import parse_qsl

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from signal_bridge.exceptions import VenueRejected
from signal_bridge.exchange_clients.aster_client import AsterClient, _format_param, to_aster_symbol
from signal_bridge.exchange_clients.aster_v3_client import EIP712_DOMAIN, EIP712_TYPES, AsterV3Client
from signal_bridge.exchange_clients.base import ORDER_STATUS_CANCELED, ORDER_STATUS_FILLED

TEST_PRIVATE_KEY = "0x" + "11" * 32
TEST_SIGNER = Account.from_key(TEST_PRIVATE_KEY).address


def _handler(payload, status=200, requests=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(status, json=payload)
    return handler


def _make_client(payload=None, status=200, requests=None, **overrides):
    kwargs = {
        "api_key": "key",
        "api_secret": "secret",
        "max_retries": 0,
        "retry_delay": 0,
        "transport": httpx.MockTransport(_handler(payload if payload is not None else {}, status, requests)),
    }
    kwargs.update(overrides)
    return AsterClient(**kwargs)


def _make_v3_client(payload=None, requests=None, **overrides):
    kwargs = {
        "user_address": "0xUser",
        "signer_address": TEST_SIGNER,
        "private_key": TEST_PRIVATE_KEY,
        "max_retries": 0,
        "retry_delay": 0,
        "transport": httpx.MockTransport(_handler(payload if payload is not None else {}, requests=requests)),
    }
    kwargs.update(overrides)
    return AsterV3Client(**kwargs)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestSymbolsAndParams:

    @pytest.mark.parametrize("symbol,expected", [
        ("BTCUSDT", "BTCUSDT"),
        ("BTCUSD", "BTCUSDT"),
        ("BTC-USD", "BTCUSDT"),
        ("ETH-USDC", "ETHUSDC"),
    ])
    def test_to_aster_symbol(self, symbol, expected):
        assert to_aster_symbol(symbol) == expected

    def test_symbol_key_matches_contract_listing(self):
        """Edge case: a USD alert and the USDT contract share one key."""
        client = _make_client()
        assert client.symbol_key("COINBASE:BTC-USD") == "BTCUSDT"
        assert client.symbol_key("BTCUSDT") == client.symbol_key("BTCUSD")

    def test_format_param_avoids_scientific_notation(self):
        assert _format_param(0.00001) == "0.00001"
        assert _format_param(2.0) == "2"
        assert _format_param(True) == "true"
        assert _format_param(5) == "5"


# ---------------------------------------------------------------------------
# HMAC signing
# ---------------------------------------------------------------------------


class TestHmacSigning:

    def test_sign_query_sorted_with_timestamp(self):
        """Happy path: params sorted, timestamp appended, HMAC over the query."""
        client = _make_client()

        signed = client.sign_query({"symbol": "BTCUSDT", "side": "BUY", "quantity": 0.5}, timestamp_ms=1700000000000)

        query, signature = signed.rsplit("&signature=", 1)
        assert query == "quantity=0.5&side=BUY&symbol=BTCUSDT&timestamp=1700000000000"
        expected = hmac.new(b"secret", query.encode(), hashlib.sha256).hexdigest()
        assert signature == expected

    def test_none_values_dropped(self):
        client = _make_client()
        signed = client.sign_query({"symbol": "BTCUSDT", "price": None}, timestamp_ms=1)
        assert "price" not in signed

    @pytest.mark.asyncio
    async def test_api_key_header_and_signature_sent(self):
        requests = []
        client = _make_client([{"asset": "USDT", "balance": "100", "availableBalance": "80"}], requests=requests)

        assert await client.get_available_margin() == 80.0

        request = requests[0]
        assert request.headers["X-MBX-APIKEY"] == "key"
        assert request.url.path == "/fapi/v2/balance"
        assert "signature" in dict(parse_qsl(request.url.query.decode()))

    @pytest.mark.asyncio
    async def test_ticker_is_unsigned(self):
        requests = []
        client = _make_client({"price": "50123.5"}, requests=requests)

        ticker = await client.get_ticker("BTC-USD")

        assert ticker == {"symbol": "BTC-USD", "price": 50123.5}
        params = dict(parse_qsl(requests[0].url.query.decode()))
        assert params == {"symbol": "BTCUSDT"}


# ---------------------------------------------------------------------------
# Positions and orders
# ---------------------------------------------------------------------------


class TestAsterTrading:

    @pytest.mark.asyncio
    async def test_positions_signed_amount(self):
        """Happy path: negative positionAmt means short; flat rows skipped."""
        client = _make_client([
            {"symbol": "BTCUSDT", "positionAmt": "-0.010", "entryPrice": "50000", "markPrice": "49000",
             "unRealizedProfit": "10"},
            {"symbol": "ETHUSDT", "positionAmt": "0", "entryPrice": "0"},
        ])

        positions = await client.get_positions()

        assert positions == [{
            "symbol": "BTCUSDT",
            "side": "SELL",
            "quantity": 0.01,
            "entry_price": 50000.0,
            "mark_price": 49000.0,
            "unrealized_pnl": 10.0,
        }]

    @pytest.mark.asyncio
    async def test_get_position_maps_canonical_symbol(self):
        client = _make_client([{"symbol": "BTCUSDT", "positionAmt": "0.5", "entryPrice": "1"}])

        position = await client.get_position("BTC-USD")

        assert position["symbol"] == "BTC-USD"
        assert position["side"] == "BUY"

    @pytest.mark.asyncio
    async def test_stop_loss_is_reduce_only_stop_market(self):
        requests = []
        client = _make_client({"orderId": 42, "status": "NEW"}, requests=requests)

        result = await client.place_stop_loss("BTCUSDT", "sell", 0.01, 48000.0)

        params = dict(parse_qsl(requests[0].url.query.decode()))
        assert requests[0].method == "POST"
        assert params["type"] == "STOP_MARKET"
        assert params["side"] == "SELL"
        assert params["stopPrice"] == "48000"
        assert params["reduceOnly"] == "true"
        assert result["order_id"] == "42"

    @pytest.mark.asyncio
    async def test_trailing_stop_uses_callback_rate(self):
        requests = []
        client = _make_client({"orderId": 44, "status": "NEW"}, requests=requests)

        result = await client.place_trailing_stop("BTCUSDT", "SELL", 0.01, distance=750.0, callback_rate=1.5)

        params = dict(parse_qsl(requests[0].url.query.decode()))
        assert params["type"] == "TRAILING_STOP_MARKET"
        assert params["callbackRate"] == "1.5"
        assert params["reduceOnly"] == "true"
        assert "stopPrice" not in params
        assert result["order_id"] == "44"

    @pytest.mark.asyncio
    async def test_trailing_stop_rate_floor(self):
        """Edge case: callback rates below the 0.1% step are raised to it."""
        requests = []
        client = _make_client({"orderId": 45, "status": "NEW"}, requests=requests)
        await client.place_trailing_stop("BTCUSDT", "BUY", 0.01, callback_rate=0.04)
        assert dict(parse_qsl(requests[0].url.query.decode()))["callbackRate"] == "0.1"

    @pytest.mark.asyncio
    async def test_trailing_stop_needs_rate(self):
        client = _make_client({})
        with pytest.raises(VenueRejected):
            await client.place_trailing_stop("BTCUSDT", "SELL", 0.01, distance=500.0)

    @pytest.mark.asyncio
    async def test_take_profit_market(self):
        requests = []
        client = _make_client({"orderId": 43, "status": "NEW"}, requests=requests)

        await client.place_take_profit("BTCUSDT", "SELL", 0.01, 55000.0)

        params = dict(parse_qsl(requests[0].url.query.decode()))
        assert params["type"] == "TAKE_PROFIT_MARKET"
        assert params["reduceOnly"] == "true"

    @pytest.mark.asyncio
    async def test_cancel_defaults_to_canceled(self):
        client = _make_client({})

        result = await client.cancel_order("BTCUSDT", "9")

        assert result["status"] == ORDER_STATUS_CANCELED

    @pytest.mark.asyncio
    async def test_order_normalized(self):
        client = _make_client({
            "orderId": 7, "symbol": "BTCUSDT", "side": "BUY", "type": "LIMIT", "status": "FILLED",
            "price": "25000", "avgPrice": "24990", "origQty": "0.004", "executedQty": "0.004",
        })

        order = await client.get_order("BTCUSDT", "7")

        assert order["status"] == ORDER_STATUS_FILLED
        assert order["avg_fill_price"] == 24990.0
        assert order["filled_quantity"] == 0.004

    @pytest.mark.asyncio
    async def test_venue_rejection_carries_code(self):
        """Failure: a -2019 margin error becomes VenueRejected with the venue code."""
        client = _make_client({"code": -2019, "msg": "Margin is insufficient."}, status=400)

        with pytest.raises(VenueRejected) as exc_info:
            await client.place_market_order("BTCUSDT", "BUY", 1.0)

        assert exc_info.value.venue_code == -2019
        assert "Margin is insufficient" in exc_info.value.message


# ---------------------------------------------------------------------------
# EIP-712 signing (v3)
# ---------------------------------------------------------------------------


class TestAsterV3Signing:

    def test_signer_mismatch_uses_wallet_address(self):
        """Edge case: a wrong configured signer is replaced by the key's address."""
        client = _make_v3_client(signer_address="0x0000000000000000000000000000000000000001")
        assert client.signer_address == TEST_SIGNER

    def test_private_key_without_prefix(self):
        client = _make_v3_client(private_key="11" * 32)
        assert client.signer_address == TEST_SIGNER

    def test_nonce_strictly_increasing(self):
        client = _make_v3_client()
        nonces = [client.generate_nonce() for _ in range(50)]
        assert all(b > a for a, b in zip(nonces, nonces[1:]))

    def test_param_string_sorted_with_auth_fields(self):
        client = _make_v3_client()

        param_string = client.build_param_string({"symbol": "BTCUSDT", "side": "BUY", "quantity": 0.01}, nonce=123)

        assert param_string == (
            f"nonce=123&quantity=0.01&side=BUY&signer={TEST_SIGNER}&symbol=BTCUSDT&user=0xUser"
        )

    def test_signature_recovers_signer(self):
        """Happy path: the typed-data signature recovers to the API wallet."""
        client = _make_v3_client()
        param_string = client.build_param_string({"symbol": "BTCUSDT"}, nonce=1)

        signature = client.sign_message(param_string)

        signable = encode_typed_data(
            domain_data=EIP712_DOMAIN, message_types=EIP712_TYPES, message_data={"msg": param_string},
        )
        assert signature.startswith("0x")
        assert Account.recover_message(signable, signature=signature) == TEST_SIGNER

    @pytest.mark.asyncio
    async def test_requests_use_v3_prefix(self):
        requests = []
        client = _make_v3_client([], requests=requests)

        await client.get_positions()

        url = str(requests[0].url)
        assert requests[0].url.path == "/fapi/v3/positionRisk"
        assert "signature=0x" in url
        assert "user=0xUser" in url
        assert "X-MBX-APIKEY" not in requests[0].headers

    @pytest.mark.asyncio
    async def test_trailing_stop_on_v3(self):
        requests = []
        client = _make_v3_client({"orderId": 46, "status": "NEW"}, requests=requests)

        assert client.supports_trailing_stop is True
        await client.place_trailing_stop("BTCUSD", "SELL", 0.01, callback_rate=2.0)

        params = dict(parse_qsl(requests[0].url.query.decode()))
        assert requests[0].url.path == "/fapi/v3/order"
        assert params["symbol"] == "BTCUSDT"
        assert params["type"] == "TRAILING_STOP_MARKET"
        assert params["callbackRate"] == "2"

    def test_default_timeout(self):
        client = _make_v3_client()
        assert client._timeout == 15.0

    def test_format_param_matches_hmac_client(self):
        client = _make_v3_client()
        param_string = client.build_param_string({"flag": True, "qty": 0.00001}, nonce=2)
        assert "flag=true" in param_string
        assert "qty=0.00001" in param_string
