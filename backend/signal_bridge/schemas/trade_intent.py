"""Webhook alert payload and the normalized trade intent built from it"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from signal_bridge.exceptions import ValidationError
from signal_bridge.exchange_clients.symbols import canonical_symbol

EXIT_STRATEGIES = ("fixed_tp_sl", "time_1h", "time_2h", "eod")

ACTION_ALIASES = {
    "buy": "open-long",
    "long": "open-long",
    "sell": "open-short",
    "short": "open-short",
    "close": "close",
}


class TradeAction(str, Enum):
    OPEN_LONG = "open-long"
    OPEN_SHORT = "open-short"
    CLOSE = "close"


class WebhookAlert(BaseModel):
    """Raw alert body as sent by TradingView-style webhooks.

    Accepts both snake_case and the camelCase shorthands used in alert
    templates (stopLoss, takeProfit, trailingStop, orderType).
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    secret: Optional[str] = None
    action: Optional[str] = None
    symbol: Optional[str] = None
    exchange: str = "aster"
    account_id: str = "default"
    environment: Optional[str] = None  # None = first active credential

    order_type: str = Field("market", alias="orderType")
    price: Optional[float] = None

    stop_loss_percent: Optional[float] = None
    stop_loss: Optional[float] = Field(None, alias="stopLoss")
    take_profit_percent: Optional[float] = None
    take_profit: Optional[float] = Field(None, alias="takeProfit")
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    trailing_stop_percent: Optional[float] = None
    trailing_stop_distance: Optional[float] = Field(None, alias="trailingStop")
    trailing_stop_pips: Optional[float] = None

    position_size_usd: Optional[float] = None
    position_multiplier: Optional[float] = None
    leverage: Optional[int] = None
    sell_percentage: Optional[float] = None

    # Options combos (tradier_options)
    option_right: Optional[str] = Field(None, alias="right")
    strike: Optional[float] = None
    expiration: Optional[str] = None
    exit_strategy: Optional[str] = Field(None, alias="exitStrategy")

    timestamp: Optional[Union[str, float, int]] = None


class TradeIntent(BaseModel):
    """Normalized, immutable instruction consumed once by the TradeExecutor."""
    model_config = ConfigDict(frozen=True)

    action: TradeAction
    symbol: str
    exchange: str
    account_id: str
    environment: Optional[str] = None  # None = first active credential
    order_type: str = "market"
    price: Optional[float] = None

    stop_loss_percent: Optional[float] = None
    take_profit_percent: Optional[float] = None
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    trailing_stop_percent: Optional[float] = None
    trailing_stop_distance: Optional[float] = None

    position_size_usd: Optional[float] = None
    position_multiplier: Optional[float] = None
    leverage: Optional[int] = None
    sell_percentage: Optional[float] = None

    option_right: Optional[str] = None
    option_strike: Optional[float] = None
    option_expiration: Optional[str] = None
    exit_strategy: Optional[str] = None

    signal_timestamp: Optional[datetime] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_entry(self) -> bool:
        return self.action in (TradeAction.OPEN_LONG, TradeAction.OPEN_SHORT)

    @property
    def side(self) -> Optional[str]:
        """Order side for entries: BUY for longs, SELL for shorts."""
        if self.action == TradeAction.OPEN_LONG:
            return "BUY"
        if self.action == TradeAction.OPEN_SHORT:
            return "SELL"
        return None


def parse_signal_timestamp(value: Any) -> Optional[datetime]:
    """Parse an alert timestamp (epoch seconds, epoch ms, or ISO-8601) to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.replace(".", "", 1).isdigit()):
        number = float(value)
        # Anything past year ~2286 in seconds is really milliseconds
        if number > 1e10:
            number = number / 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _positive(name: str, value: Optional[float]) -> Optional[float]:
    if value is not None and value <= 0:
        raise ValidationError(f"{name} must be positive")
    return value


def build_trade_intent(alert: WebhookAlert) -> TradeIntent:
    """
    Validate a webhook alert and convert it into a TradeIntent.

    Raises:
        ValidationError: missing/unknown action, missing symbol, limit order
            without a price, non-positive sizes or percentages.
    """
    if not alert.action:
        raise ValidationError("Missing required field: action")
    action = ACTION_ALIASES.get(alert.action.strip().lower())
    if action is None:
        raise ValidationError(
            f"Invalid action '{alert.action}'. Must be one of: buy, sell, close, long, short"
        )

    symbol = canonical_symbol(alert.symbol or "")
    if not symbol:
        raise ValidationError("Missing required field: symbol")

    order_type = (alert.order_type or "market").lower()
    if order_type not in ("market", "limit"):
        raise ValidationError(f"Invalid orderType '{alert.order_type}'. Must be market or limit")
    if order_type == "limit" and action != "close" and not alert.price:
        raise ValidationError("Missing required field: price (for limit orders)")

    stop_loss_percent = alert.stop_loss_percent if alert.stop_loss_percent is not None else alert.stop_loss
    take_profit_percent = (
        alert.take_profit_percent if alert.take_profit_percent is not None else alert.take_profit
    )

    if alert.sell_percentage is not None and not (0.1 <= alert.sell_percentage <= 100):
        raise ValidationError("sell_percentage must be between 0.1 and 100")
    if alert.leverage is not None and alert.leverage < 1:
        raise ValidationError("leverage must be at least 1")
    if (
        action == "open-long" and stop_loss_percent is not None
        and alert.leverage and stop_loss_percent >= 100 * alert.leverage
    ):
        # A long margin stop of 100% x leverage or more lands at or below zero
        raise ValidationError(
            f"stop_loss_percent {stop_loss_percent} must be below {100 * alert.leverage} at {alert.leverage}x"
        )
    trailing_stop_distance = (
        alert.trailing_stop_distance if alert.trailing_stop_distance is not None else alert.trailing_stop_pips
    )

    option_right = (alert.option_right or "").strip().lower() or None
    if option_right is not None and option_right not in ("call", "put"):
        raise ValidationError(f"Invalid right '{alert.option_right}'. Must be call or put")
    exit_strategy = (alert.exit_strategy or "").strip().lower() or None
    if exit_strategy is not None and exit_strategy not in EXIT_STRATEGIES:
        raise ValidationError(
            f"Invalid exitStrategy '{alert.exit_strategy}'. Must be one of: {', '.join(EXIT_STRATEGIES)}"
        )

    return TradeIntent(
        action=TradeAction(action),
        symbol=symbol,
        exchange=alert.exchange.strip().lower(),
        account_id=alert.account_id,
        environment=alert.environment,
        order_type=order_type,
        price=_positive("price", alert.price),
        stop_loss_percent=_positive("stop_loss_percent", stop_loss_percent),
        take_profit_percent=_positive("take_profit_percent", take_profit_percent),
        stop_loss_price=_positive("stop_loss_price", alert.stop_loss_price),
        take_profit_price=_positive("take_profit_price", alert.take_profit_price),
        trailing_stop_percent=_positive("trailing_stop_percent", alert.trailing_stop_percent),
        trailing_stop_distance=_positive("trailing_stop_distance", trailing_stop_distance),
        position_size_usd=_positive("position_size_usd", alert.position_size_usd),
        position_multiplier=_positive("position_multiplier", alert.position_multiplier),
        leverage=alert.leverage,
        sell_percentage=alert.sell_percentage,
        option_right=option_right,
        option_strike=_positive("strike", alert.strike),
        option_expiration=alert.expiration,
        exit_strategy=exit_strategy,
        signal_timestamp=parse_signal_timestamp(alert.timestamp),
    )
