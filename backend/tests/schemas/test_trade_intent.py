"""
Tests for backend/signal_bridge/schemas/trade_intent.py

Tests alert validation, action aliases, camelCase shorthands and
timestamp parsing.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from signal_bridge.exceptions import ValidationError
from signal_bridge.schemas.trade_intent import (
    TradeAction,
    WebhookAlert,
    build_trade_intent,
    parse_signal_timestamp,
)


def _make_alert(**overrides):
    data = {"secret": "s3cret", "action": "buy", "symbol": "BINANCE:BTCUSDT.P", "exchange": "Aster"}
    data.update(overrides)
    return WebhookAlert(**data)


class TestBuildTradeIntent:
    """Tests for build_trade_intent()"""

    def test_buy_alert(self):
        """Happy path: buy becomes open-long on a canonical symbol."""
        intent = build_trade_intent(_make_alert())
        assert intent.action == TradeAction.OPEN_LONG
        assert intent.symbol == "BTCUSDT"
        assert intent.exchange == "aster"
        assert intent.side == "BUY"
        assert intent.is_entry

    def test_aliases(self):
        """Happy path: long/short are aliases for buy/sell."""
        assert build_trade_intent(_make_alert(action="SHORT")).action == TradeAction.OPEN_SHORT
        assert build_trade_intent(_make_alert(action="long")).action == TradeAction.OPEN_LONG
        close = build_trade_intent(_make_alert(action="close"))
        assert close.side is None
        assert not close.is_entry

    def test_camel_case_shorthands(self):
        """Happy path: stopLoss / takeProfit / orderType are accepted."""
        alert = WebhookAlert(**{
            "action": "sell", "symbol": "ETHUSDT", "orderType": "limit", "price": 3000,
            "stopLoss": 20, "takeProfit": 40,
        })
        intent = build_trade_intent(alert)
        assert intent.order_type == "limit"
        assert intent.stop_loss_percent == 20
        assert intent.take_profit_percent == 40

    def test_trailing_stop_fields(self):
        """Happy path: trailingStop is a price distance, trailing_stop_pips its alias."""
        intent = build_trade_intent(WebhookAlert(**{
            "action": "buy", "symbol": "EURUSD", "exchange": "oanda", "trailingStop": 0.0015,
        }))
        assert intent.trailing_stop_distance == 0.0015
        assert intent.trailing_stop_percent is None

        intent = build_trade_intent(_make_alert(trailing_stop_pips=0.002, trailing_stop_percent=1.5))
        assert intent.trailing_stop_distance == 0.002
        assert intent.trailing_stop_percent == 1.5

    def test_stop_below_full_margin_accepted(self):
        """Edge case: the margin stop bound scales with leverage."""
        intent = build_trade_intent(_make_alert(stopLoss=450, leverage=5))
        assert intent.stop_loss_percent == 450
        short = build_trade_intent(_make_alert(action="sell", stopLoss=600, leverage=5))
        assert short.stop_loss_percent == 600

    def test_dashed_symbol_is_canonical(self):
        """Edge case: dashed pairs lose the dash like the venue listings do."""
        assert build_trade_intent(_make_alert(symbol="COINBASE:BTC-USD")).symbol == "BTCUSD"

    def test_option_fields(self):
        """Happy path: option combos carry right, strike and exit strategy."""
        intent = build_trade_intent(_make_alert(
            exchange="tradier_options", symbol="SPY", right="Put", strike=500, exitStrategy="EOD"
        ))
        assert intent.option_right == "put"
        assert intent.option_strike == 500
        assert intent.exit_strategy == "eod"

    def test_intent_is_immutable(self):
        """Edge case: intents cannot be modified after validation."""
        intent = build_trade_intent(_make_alert())
        with pytest.raises(PydanticValidationError):
            intent.symbol = "ETHUSDT"

    @pytest.mark.parametrize("overrides,fragment", [
        ({"action": None}, "action"),
        ({"action": "hold"}, "Invalid action"),
        ({"symbol": ""}, "symbol"),
        ({"orderType": "stop"}, "orderType"),
        ({"orderType": "limit"}, "price"),
        ({"sell_percentage": 150}, "sell_percentage"),
        ({"position_size_usd": -10}, "position_size_usd"),
        ({"leverage": 0}, "leverage"),
        ({"right": "straddle"}, "right"),
        ({"exitStrategy": "never"}, "exitStrategy"),
        ({"stopLoss": 600, "leverage": 5}, "stop_loss_percent"),
        ({"trailing_stop_percent": -1}, "trailing_stop_percent"),
    ])
    def test_rejections(self, overrides, fragment):
        """Failure: malformed alerts raise ValidationError naming the field."""
        with pytest.raises(ValidationError) as exc:
            build_trade_intent(_make_alert(**overrides))
        assert fragment in exc.value.message
        assert exc.value.status_code == 400

    def test_limit_close_needs_no_price(self):
        """Edge case: a limit-typed close is accepted without a price."""
        intent = build_trade_intent(_make_alert(action="close", orderType="limit"))
        assert intent.action == TradeAction.CLOSE


class TestParseSignalTimestamp:
    """Tests for parse_signal_timestamp()"""

    def test_epoch_seconds_and_millis(self):
        expected = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
        seconds = expected.timestamp()
        assert parse_signal_timestamp(seconds) == expected
        assert parse_signal_timestamp(int(seconds * 1000)) == expected
        assert parse_signal_timestamp(str(int(seconds))) == expected

    def test_iso_with_z(self):
        assert parse_signal_timestamp("2026-10-14T12:00:00Z") == datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)

    def test_empty_is_none(self):
        assert parse_signal_timestamp(None) is None
        assert parse_signal_timestamp("") is None

    def test_garbage_raises(self):
        with pytest.raises(ValidationError):
            parse_signal_timestamp("yesterday")
