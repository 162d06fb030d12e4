"""
Multi-leg (OTOCO) option order monitor

Drives each option_leg_orders row through its lifecycle by polling the
broker order that holds the entry, take-profit and stop-loss legs:

    pending_entry --entry filled--------------> open
    pending_entry --entry canceled/rejected---> cancelled
    open --------- TP leg filled -------------> closed_tp
    open --------- SL leg filled -------------> closed_sl
    open --------- time exit / auto-close ----> closed

Terminal rows are never loaded again, and the ledger row plus the status
change are committed together, so each trade is recorded exactly once.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.exceptions import AppError
from signal_bridge.exchange_clients.base import (
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_PARTIALLY_FILLED,
    ORDER_STATUS_REJECTED,
)
from signal_bridge.models import OptionLegOrder, TradeRecord
from signal_bridge.services.exchange_service import get_exchange_client
from signal_bridge.services.settings_service import settings_service
from signal_bridge.services.trade_calculations import calculate_option_pnl
from signal_bridge.services.trading_window import NEW_YORK, is_within_trading_window, minutes_in_zone

logger = logging.getLogger(__name__)

STATUS_PENDING_ENTRY = "pending_entry"
STATUS_OPEN = "open"
STATUS_CLOSED_TP = "closed_tp"
STATUS_CLOSED_SL = "closed_sl"
STATUS_CLOSED = "closed"
STATUS_CANCELLED = "cancelled"

ACTIVE_STATUSES = (STATUS_PENDING_ENTRY, STATUS_OPEN)

LEG_FILLED = {ORDER_STATUS_FILLED, ORDER_STATUS_PARTIALLY_FILLED}
LEG_INACTIVE = {ORDER_STATUS_CANCELED, ORDER_STATUS_EXPIRED, ORDER_STATUS_REJECTED, "error"}

EXIT_TAKE_PROFIT = "TAKE_PROFIT"
EXIT_STOP_LOSS = "STOP_LOSS"
EXIT_AUTO_CLOSE = "AUTO_CLOSE"

# Exit strategy -> (minutes after midnight New York time, exit reason)
TIME_EXITS = {
    "time_1h": (11 * 60, "TIME_1H"),
    "time_2h": (12 * 60, "TIME_2H"),
    "eod": (15 * 60 + 55, "EOD"),
}


def _leg_side(leg: Dict[str, Any]) -> str:
    return str(leg.get("side") or "").lower()


def _leg_type(leg: Dict[str, Any]) -> str:
    return str(leg.get("type") or "").lower()


def find_entry_leg(legs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return next((leg for leg in legs if _leg_side(leg) == "buy_to_open"), None)


def find_take_profit_leg(legs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return next(
        (leg for leg in legs if _leg_side(leg) == "sell_to_close" and _leg_type(leg) == "limit"),
        None,
    )


def find_stop_loss_leg(legs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return next(
        (leg for leg in legs if _leg_side(leg) == "sell_to_close" and _leg_type(leg) in ("stop", "stop_limit")),
        None,
    )


def find_exit_leg(legs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return next((leg for leg in legs if _leg_side(leg) == "sell_to_close"), None)


def is_filled(leg: Optional[Dict[str, Any]]) -> bool:
    return bool(leg) and str(leg.get("status") or "").lower() in LEG_FILLED


def is_inactive(leg: Optional[Dict[str, Any]]) -> bool:
    return bool(leg) and str(leg.get("status") or "").lower() in LEG_INACTIVE


def leg_price(leg: Dict[str, Any]) -> Optional[float]:
    """Average fill price, falling back to the order price."""
    for field in ("avg_fill_price", "price"):
        value = leg.get(field)
        try:
            if value is not None and float(value) > 0:
                return float(value)
        except (TypeError, ValueError):
            continue
    return None


def time_exit_due(
    exit_strategy: Optional[str],
    scheduled_exit_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Whether a time-based exit strategy has reached its exit time."""
    if exit_strategy not in TIME_EXITS:
        return False
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if scheduled_exit_time is not None:
        if scheduled_exit_time.tzinfo is None:
            scheduled_exit_time = scheduled_exit_time.replace(tzinfo=timezone.utc)
        return now >= scheduled_exit_time
    exit_minutes, _ = TIME_EXITS[exit_strategy]
    return minutes_in_zone(now, NEW_YORK) >= exit_minutes


class MultiLegOrderMonitor:
    """Poll broker combo orders and advance option_leg_orders rows."""

    def __init__(
        self,
        client_provider=None,
        settings_reader=None,
        session_maker=None,
        interval_seconds: Optional[int] = None,
        exit_fill_delay_seconds: float = 2.0,
    ):
        self.interval_seconds = interval_seconds or settings.multi_leg_interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._client_provider = client_provider or get_exchange_client
        self._settings = settings_reader or settings_service
        self._session_maker = session_maker or async_session_maker
        self._exit_fill_delay = exit_fill_delay_seconds
        self._processing: Set[int] = set()

    async def start(self):
        """Start the multi-leg monitoring loop"""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Multi-leg order monitor started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the multi-leg monitoring loop"""
        self.running = False
        if self.task:
            await self.task
            logger.info("Multi-leg order monitor stopped")

    async def _monitor_loop(self):
        while self.running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Multi-leg monitor error: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    async def sweep(self, now: Optional[datetime] = None):
        """Advance every active combo trade once."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(OptionLegOrder.id)
                .where(OptionLegOrder.status.in_(ACTIVE_STATUSES))
                .order_by(OptionLegOrder.id)
                .limit(500)
            )
            trade_ids = list(result.scalars().all())

        for trade_id in trade_ids:
            if trade_id in self._processing:
                continue
            self._processing.add(trade_id)
            try:
                # One session per trade so a failure cannot leak into the next row
                async with self._session_maker() as db:
                    trade = await db.get(OptionLegOrder, trade_id)
                    if trade is not None and trade.status in ACTIVE_STATUSES:
                        await self.process_trade(db, trade, now)
            except Exception as e:
                logger.warning(f"Option trade processing failed for #{trade_id}: {e}", exc_info=True)
            finally:
                self._processing.discard(trade_id)

    async def process_trade(self, db: AsyncSession, trade: OptionLegOrder, now: Optional[datetime] = None):
        client = await self._client_provider(db, trade.account_id, trade.exchange)
        if client is None:
            logger.debug(f"No {trade.exchange} client for account {trade.account_id}")
            return

        try:
            order = await client.get_order_legs(trade.entry_order_id)
        except AppError as e:
            logger.warning(f"Failed to fetch order {trade.entry_order_id} for {trade.option_symbol}: {e.message}")
            return

        legs = order.get("legs") or []
        entry_leg = find_entry_leg(legs)
        if entry_leg is None:
            logger.warning(f"Option trade #{trade.id} missing entry leg data")
            return
        tp_leg = find_take_profit_leg(legs)
        sl_leg = find_stop_loss_leg(legs)

        trade.entry_order = entry_leg
        trade.tp_leg = tp_leg or trade.tp_leg
        trade.sl_leg = sl_leg or trade.sl_leg

        if trade.status == STATUS_PENDING_ENTRY:
            if is_filled(entry_leg):
                logger.info(f"Option entry filled for {trade.option_symbol}")
                trade.status = STATUS_OPEN
            elif is_inactive(entry_leg):
                logger.info(f"Option entry for {trade.option_symbol} ended with status {entry_leg.get('status')}")
                trade.status = STATUS_CANCELLED
                trade.closed_at = datetime.utcnow()
            await db.commit()
            return

        # A filled bracket leg closes the trade before any market exit is tried
        if is_filled(tp_leg):
            await self._handle_exit(db, trade, entry_leg, tp_leg, EXIT_TAKE_PROFIT)
            return
        if is_filled(sl_leg):
            await self._handle_exit(db, trade, entry_leg, sl_leg, EXIT_STOP_LOSS)
            return

        if trade.auto_close_order_id:
            await self._check_pending_exit(db, client, trade, entry_leg)
            return

        if time_exit_due(trade.exit_strategy, trade.scheduled_exit_time, now):
            _, reason = TIME_EXITS[trade.exit_strategy]
            await self._submit_exit(db, client, trade, entry_leg, reason, tag=f"{trade.exit_strategy}_exit")
            return

        risk_settings = await self._settings.get(db, trade.account_id, trade.exchange)
        if risk_settings.auto_close_outside_window and not is_within_trading_window(
            risk_settings.trading_hours_preset, risk_settings.trading_window, now
        ):
            logger.info(f"Auto-closing {trade.option_symbol} outside the trading window")
            await self._submit_exit(db, client, trade, entry_leg, EXIT_AUTO_CLOSE, tag="auto_close")
            return

        await db.commit()

    async def _submit_exit(self, db, client, trade: OptionLegOrder, entry_leg, reason: str, tag: str):
        """Market sell_to_close; finish now if filled, else on a later poll."""
        logger.info(f"Submitting {reason} exit for {trade.option_symbol}")
        order = await client.create_option_market_order(
            trade.underlying_symbol,
            trade.option_symbol,
            int(trade.quantity_contracts or 1),
            "sell_to_close",
            duration="day",
            tag=tag,
        )
        trade.auto_close_order_id = str(order.get("id"))
        trade.exit_reason = reason
        await db.commit()

        if self._exit_fill_delay:
            await asyncio.sleep(self._exit_fill_delay)
        await self._check_pending_exit(db, client, trade, entry_leg)

    async def _check_pending_exit(self, db, client, trade: OptionLegOrder, entry_leg):
        exit_order = await client.get_order_legs(trade.auto_close_order_id)
        exit_leg = find_exit_leg(exit_order.get("legs") or [])
        trade.auto_close_order = exit_order

        if is_filled(exit_leg):
            await self._handle_exit(db, trade, entry_leg, exit_leg, trade.exit_reason or EXIT_AUTO_CLOSE)
            return

        if exit_leg is None or is_inactive(exit_leg):
            # Exit never worked; allow a fresh attempt next poll
            logger.warning(
                f"Exit order {trade.auto_close_order_id} for {trade.option_symbol} "
                f"ended without a fill ({exit_order.get('status')})"
            )
            trade.auto_close_order_id = None
            trade.exit_reason = None
        else:
            logger.info(f"Exit order {trade.auto_close_order_id} for {trade.option_symbol} not filled yet")
        await db.commit()

    async def _handle_exit(self, db, trade: OptionLegOrder, entry_leg, exit_leg, exit_reason: str):
        entry_price = leg_price(entry_leg)
        exit_price = leg_price(exit_leg)
        if entry_price is None or exit_price is None:
            logger.warning(f"Cannot compute P&L for {trade.option_symbol}: missing fill prices")
            await db.commit()
            return

        contracts = int(trade.quantity_contracts or 1)
        contract_size = int(trade.contract_size or 100)
        pnl_usd, pnl_percent = calculate_option_pnl(entry_price, exit_price, contracts, contract_size)
        logger.info(f"Option trade {trade.option_symbol} closed ({exit_reason}) with P&L ${pnl_usd:.2f}")

        db.add(TradeRecord(
            account_id=trade.account_id,
            exchange=trade.exchange,
            symbol=trade.underlying_symbol,
            side="BUY",
            asset_class="options",
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=contracts * contract_size,
            position_size_usd=trade.cost_usd or entry_price * contracts * contract_size,
            entry_time=trade.created_at,
            exit_time=datetime.utcnow(),
            stop_loss_price=trade.sl_stop_price,
            take_profit_price=trade.tp_limit_price,
            pnl_usd=pnl_usd,
            pnl_percent=pnl_percent,
            exit_reason=exit_reason,
            notes=f"Option symbol: {trade.option_symbol}",
        ))

        if exit_reason == EXIT_TAKE_PROFIT:
            trade.status = STATUS_CLOSED_TP
            trade.tp_leg = exit_leg
        elif exit_reason == EXIT_STOP_LOSS:
            trade.status = STATUS_CLOSED_SL
            trade.sl_leg = exit_leg
        else:
            trade.status = STATUS_CLOSED
        trade.pnl_usd = pnl_usd
        trade.pnl_percent = pnl_percent
        trade.exit_reason = exit_reason
        trade.closed_at = datetime.utcnow()
        await db.commit()
