"""
Option combo entries (tradier_options)

Builds the option contract for an alert, submits it either as an OTOCO
combo (buy_to_open limit + sell_to_close limit TP + sell_to_close stop SL)
or, for time-based exit strategies, as a plain market buy_to_open, and
records a pending_entry option_leg_orders row for MultiLegOrderMonitor.
"""

import logging
import math
from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.exceptions import ValidationError
from signal_bridge.exchange_clients.tradier_client import to_occ_option_symbol
from signal_bridge.models import OptionLegOrder
from signal_bridge.schemas.trade_intent import TradeIntent
from signal_bridge.schemas.trade_result import TradeResult
from signal_bridge.services.multi_leg_monitor import STATUS_PENDING_ENTRY, TIME_EXITS
from signal_bridge.services.settings_service import RiskSettings
from signal_bridge.services.trade_calculations import resolve_trade_amount, round_price
from signal_bridge.services.trading_window import NEW_YORK

logger = logging.getLogger(__name__)

DEFAULT_EXIT_STRATEGY = "fixed_tp_sl"
DEFAULT_TP_PERCENT = 50.0
DEFAULT_SL_PERCENT = 30.0
ENTRY_LIMIT_OFFSET_PERCENT = 1.0
STRIKE_TOLERANCE_PERCENT = 1.0


def pick_strike(
    underlying_price: float,
    desired_strike: Optional[float] = None,
    tolerance_percent: float = STRIKE_TOLERANCE_PERCENT,
) -> float:
    """Desired strike if given, else a whole-dollar strike just below the price."""
    if desired_strike:
        return float(desired_strike)
    rounded = math.floor(underlying_price)
    return float(max(0, round(rounded - rounded * tolerance_percent / 100)))


def pick_expiration(expirations: List[str], desired: Optional[str] = None) -> str:
    """Desired expiration when listed, else the nearest one."""
    if not expirations:
        raise ValidationError("No option expirations available")
    if desired and desired in expirations:
        return desired
    return expirations[0]


def scheduled_exit_time(exit_strategy: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Today's exit time (aware UTC) for a time-based strategy, None if passed or not time-based."""
    if exit_strategy not in TIME_EXITS:
        return None
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(ZoneInfo(NEW_YORK))
    exit_minutes, _ = TIME_EXITS[exit_strategy]
    exit_local = local_now.replace(hour=exit_minutes // 60, minute=exit_minutes % 60, second=0, microsecond=0)
    if exit_local <= local_now:
        return None
    return exit_local.astimezone(timezone.utc)


class OptionTradeService:
    """Submit option combos and persist them for the multi-leg monitor."""

    def __init__(self, session_maker=None):
        self._session_maker = session_maker or async_session_maker

    async def open_combo(
        self,
        intent: TradeIntent,
        client,
        risk_settings: RiskSettings,
        now: Optional[datetime] = None,
    ) -> TradeResult:
        underlying = intent.symbol
        right = intent.option_right or "call"
        exit_strategy = intent.exit_strategy or DEFAULT_EXIT_STRATEGY

        underlying_price = float((await client.get_ticker(underlying))["price"])
        strike = pick_strike(underlying_price, intent.option_strike)
        expiration = pick_expiration(await client.get_option_expirations(underlying), intent.option_expiration)
        option_symbol = to_occ_option_symbol(underlying, expiration, right, strike)

        quote = (await client.get_quotes([option_symbol]))[0]
        ask = float(quote.get("ask") or quote.get("last") or 0)
        bid = float(quote.get("bid") or ask)
        if ask <= 0:
            raise ValidationError(f"No usable ask price for {option_symbol}")
        contract_size = int(quote.get("contract_size") or 100)

        amount = resolve_trade_amount(
            settings.default_trade_amount,
            explicit_size=intent.position_size_usd,
            venue_override=risk_settings.trade_amount_override,
            venue_amount=risk_settings.trade_amount,
            position_multiplier=intent.position_multiplier or risk_settings.position_multiplier,
        )
        contracts = max(1, math.floor(amount / (ask * contract_size)))
        entry_limit = round_price(ask * (1 + ENTRY_LIMIT_OFFSET_PERCENT / 100))

        tp_price = sl_stop = None
        if exit_strategy in TIME_EXITS:
            order = await client.create_option_market_order(
                underlying, option_symbol, contracts, "buy_to_open", duration="day", tag=exit_strategy
            )
        else:
            tp_percent = intent.take_profit_percent or risk_settings.default_take_profit_percent or DEFAULT_TP_PERCENT
            sl_percent = intent.stop_loss_percent or risk_settings.default_stop_loss_percent or DEFAULT_SL_PERCENT
            tp_price = round_price(entry_limit * (1 + tp_percent / 100))
            sl_stop = round_price(bid * (1 - sl_percent / 100))
            leg = {"underlying_symbol": underlying, "option_symbol": option_symbol, "quantity": contracts}
            order = await client.create_otoco_order([
                {**leg, "side": "buy_to_open", "type": "limit", "price": entry_limit},
                {**leg, "side": "sell_to_close", "type": "limit", "price": tp_price},
                {**leg, "side": "sell_to_close", "type": "stop", "stop": sl_stop},
            ])

        exit_at = scheduled_exit_time(exit_strategy, now)
        async with self._session_maker() as db:
            trade = OptionLegOrder(
                account_id=intent.account_id,
                exchange=intent.exchange,
                underlying_symbol=underlying,
                option_symbol=option_symbol,
                status=STATUS_PENDING_ENTRY,
                quantity_contracts=contracts,
                contract_size=contract_size,
                cost_usd=amount,
                entry_order_id=str(order.get("id")),
                entry_order=order,
                tp_limit_price=tp_price,
                sl_stop_price=sl_stop,
                exit_strategy=exit_strategy,
                scheduled_exit_time=exit_at.replace(tzinfo=None) if exit_at else None,
            )
            db.add(trade)
            await db.commit()
            trade_id = trade.id

        logger.info(
            f"Option combo #{trade_id} submitted: {contracts}x {option_symbol} "
            f"(entry {entry_limit}, tp {tp_price}, sl {sl_stop}, exit {exit_strategy})"
        )
        return TradeResult(
            success=True,
            action="opened",
            message=f"{contracts} {option_symbol} submitted (order {order.get('id')}, exit {exit_strategy})",
        )
