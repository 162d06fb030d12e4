"""
Trade Executor

Turns a validated TradeIntent into venue orders:

    entry: risk check -> position check -> sizing -> entry order
           -> protective orders (SL/TP) -> store + notify
    close: venue position lookup -> reduce-only exit -> PnL
           -> cancel SL/TP -> ledger -> store + notify

One asyncio.Lock per (account, exchange, symbol) serializes the
close-before-open of a reversal against any other alert for the same key.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.exceptions import AppError, PartialExecution, RiskRejected, ValidationError
from signal_bridge.exchange_clients.base import ExchangeClient, opposite_side
from signal_bridge.models import TradeRecord
from signal_bridge.schemas.trade_intent import TradeIntent
from signal_bridge.schemas.trade_result import CloseSummary, PositionSnapshot, TradeResult
from signal_bridge.services import risk_engine
from signal_bridge.services.exchange_service import get_exchange_client
from signal_bridge.services.notification_service import (
    EVENT_POSITION_CLOSED_LOSS,
    EVENT_POSITION_CLOSED_PROFIT,
    EVENT_TRADE_FAILED,
    EVENT_TRADE_LIMIT_REACHED,
    EVENT_TRADE_SUCCESS,
    notification_dispatcher,
)
from signal_bridge.services.option_trade_service import OptionTradeService
from signal_bridge.services.position_store import PositionKey, PositionStore
from signal_bridge.services.risk_counters import RiskCounters
from signal_bridge.services.risk_engine import FailureCounter, RiskDecision
from signal_bridge.services.settings_service import RiskSettings, settings_service
from signal_bridge.services.trade_calculations import (
    apply_position_cap,
    calculate_pnl,
    calculate_pnl_percent,
    calculate_quantity,
    calculate_stop_loss,
    calculate_take_profit,
    partial_close_quantity,
    resolve_trade_amount,
    round_price,
    round_quantity,
)

logger = logging.getLogger(__name__)

EXIT_REASON_SIGNAL = "SIGNAL"
EXIT_REASON_REVERSAL = "REVERSAL"
OPTIONS_EXCHANGE = "tradier_options"


def _asset_class(exchange: str) -> str:
    if exchange == "oanda":
        return "forex"
    if exchange in ("tradestation", "tradier"):
        return "equity"
    if exchange == "tradier_options":
        return "options"
    return "crypto"


def _quantity_decimals(client: ExchangeClient, symbol: str, risk_settings: RiskSettings) -> int:
    """Venue precision first, then the account setting, then the global default."""
    decimals = client.quantity_precision(symbol)
    if decimals is None:
        decimals = risk_settings.quantity_precision
    if decimals is None:
        decimals = settings.default_quantity_precision
    return decimals


class TradeExecutor:
    """Executes trade intents against venue adapters."""

    def __init__(
        self,
        client_provider=None,
        store: Optional[PositionStore] = None,
        failure_counter: Optional[FailureCounter] = None,
        risk_counters: Optional[RiskCounters] = None,
        settings_reader=None,
        notifier=None,
        session_maker=None,
        reversal_delay_seconds: Optional[float] = None,
        option_service: Optional[OptionTradeService] = None,
    ):
        self._client_provider = client_provider or get_exchange_client
        self._session_maker = session_maker or async_session_maker
        self.store = store or PositionStore(self._session_maker)
        self.failures = failure_counter or FailureCounter()
        self.risk_counters = risk_counters or RiskCounters(self._session_maker)
        self._settings = settings_reader or settings_service
        self._notifier = notifier or notification_dispatcher
        self._reversal_delay = (
            reversal_delay_seconds if reversal_delay_seconds is not None else settings.reversal_delay_seconds
        )
        self.option_service = option_service or OptionTradeService(self._session_maker)
        self._locks: Dict[PositionKey, asyncio.Lock] = {}
        self._lock_users: Dict[PositionKey, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: PositionKey):
        """Hold the per-key lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    def _notify(self, account_id: str, event: str, payload: Dict[str, Any]):
        try:
            self._notifier.notify(account_id, event, payload)
        except Exception as e:
            logger.warning(f"Failed to enqueue {event} notification: {e}")

    # ==========================================================
    # ENTRY POINT
    # ==========================================================

    async def execute(self, intent: TradeIntent) -> TradeResult:
        """
        Execute one intent to completion.

        Raises:
            ValidationError: no credentials for the venue, unusable sizing
            RiskRejected: an entry tripped a configured limit
            AuthError / VenueRejected / ExecutionFailed: the entry or exit
                order failed at the venue
        """
        logger.info(
            f"Executing {intent.action.value} {intent.symbol} on {intent.exchange} "
            f"for account {intent.account_id}"
        )
        async with self._session_maker() as db:
            try:
                client = await self._client_provider(
                    db, intent.account_id, intent.exchange, intent.environment
                )
            except ValueError as e:
                # Unknown venue or incomplete stored credentials
                raise ValidationError(str(e))
            if client is None:
                raise ValidationError(
                    f"No credentials configured for {intent.exchange} (account {intent.account_id})"
                )
            risk_settings = await self._settings.get(db, intent.account_id, intent.exchange)

        key = PositionKey(intent.account_id, intent.exchange, intent.symbol)
        async with self._key_lock(key):
            if intent.is_entry:
                return await self._open_position(intent, client, risk_settings)
            return await self._close_position(
                intent.account_id,
                intent.exchange,
                intent.symbol,
                client,
                risk_settings,
                exit_reason=EXIT_REASON_SIGNAL,
                sell_percentage=intent.sell_percentage,
            )

    # ==========================================================
    # RISK
    # ==========================================================

    async def _check_risk(self, intent: TradeIntent, risk_settings: RiskSettings) -> RiskDecision:
        counters = await self.risk_counters.snapshot(
            risk_settings,
            open_positions=self.store.count_for(intent.account_id, intent.exchange),
            consecutive_failures=await self.failures.get(intent.account_id, intent.exchange),
        )
        decision = risk_engine.evaluate(intent, risk_settings, counters)
        if decision.allowed:
            return decision

        logger.warning(
            f"Trade blocked for {intent.account_id}/{intent.exchange} {intent.symbol}: "
            f"[{decision.limit_type}] {decision.reason}"
        )
        self._notify(intent.account_id, EVENT_TRADE_LIMIT_REACHED, {
            "exchange": intent.exchange,
            "symbol": intent.symbol,
            "limit_type": decision.limit_type,
            "reason": decision.reason,
            "current": decision.current,
            "limit": decision.limit,
        })
        raise RiskRejected(decision.reason, decision.limit_type, decision.current, decision.limit)

    # ==========================================================
    # OPEN
    # ==========================================================

    async def _open_position(
        self, intent: TradeIntent, client: ExchangeClient, risk_settings: RiskSettings
    ) -> TradeResult:
        account_id, exchange, symbol, side = intent.account_id, intent.exchange, intent.symbol, intent.side
        decision = await self._check_risk(intent, risk_settings)
        if intent.exchange == OPTIONS_EXCHANGE:
            return await self.option_service.open_combo(intent, client, risk_settings)

        reversal: Optional[CloseSummary] = None
        existing = self.store.get(account_id, exchange, symbol)
        if existing is not None:
            if not await client.has_open_position(symbol):
                logger.info(f"{symbol} is tracked but not open on {exchange}, dropping stale entry")
                await self.store.remove(account_id, exchange, symbol)
            elif existing.side == side:
                logger.info(f"Already {side} {symbol} on {exchange}, ignoring duplicate signal")
                return TradeResult(
                    success=False,
                    action="skipped",
                    message=f"Already have {side} position for {symbol}. Waiting for TP/SL or opposite signal.",
                    position=existing,
                )
            else:
                logger.info(f"Reversal on {symbol}: closing {existing.side} before opening {side}")
                try:
                    closed = await self._close_position(
                        account_id, exchange, symbol, client, risk_settings,
                        exit_reason=EXIT_REASON_REVERSAL,
                    )
                except AppError as e:
                    logger.error(f"Failed to close {symbol} for reversal: {e.message}")
                    return TradeResult(
                        success=False,
                        action="reversal_failed",
                        message=f"Failed to close existing position for reversal: {e.message}",
                    )
                reversal = closed.close_summary
                await asyncio.sleep(self._reversal_delay)

        try:
            position, warnings = await self._submit_entry(intent, client, risk_settings, decision)
        except AppError as e:
            await self.failures.increment(account_id, exchange)
            self._notify(account_id, EVENT_TRADE_FAILED, {
                "exchange": exchange,
                "symbol": symbol,
                "action": intent.action.value,
                "error_kind": e.kind,
                "error": e.message,
            })
            raise

        await self.failures.reset(account_id, exchange)
        await self.risk_counters.invalidate(account_id, exchange)
        self._notify(account_id, EVENT_TRADE_SUCCESS, {
            "exchange": exchange,
            "symbol": symbol,
            "side": side,
            "quantity": position.quantity,
            "entry_price": position.entry_price,
        })

        return TradeResult(
            success=True,
            action="reversed" if reversal else "opened",
            message=f"{side} {position.quantity} {symbol} @ {position.entry_price}",
            position=position,
            close_summary=reversal,
            warnings=warnings,
        )

    async def _submit_entry(
        self,
        intent: TradeIntent,
        client: ExchangeClient,
        risk_settings: RiskSettings,
        decision: RiskDecision,
    ):
        """Size and place the entry, then the protective orders. Returns (position, warnings)."""
        symbol, side = intent.symbol, intent.side

        amount = resolve_trade_amount(
            settings.default_trade_amount,
            explicit_size=intent.position_size_usd,
            venue_override=risk_settings.trade_amount_override,
            venue_amount=risk_settings.trade_amount,
            position_multiplier=intent.position_multiplier or risk_settings.position_multiplier,
        )
        capped = apply_position_cap(amount, decision.max_position_size)
        if capped != amount:
            logger.info(f"Position size ${amount:.2f} capped to ${capped:.2f}")
            amount = capped

        leverage = intent.leverage or risk_settings.leverage or settings.default_leverage
        if intent.order_type == "limit":
            entry_price = float(intent.price)
        else:
            ticker = await client.get_ticker(symbol)
            entry_price = float(ticker["price"])

        quantity_decimals = _quantity_decimals(client, symbol, risk_settings)
        price_decimals = client.price_precision(symbol)
        if price_decimals is None:
            price_decimals = settings.default_price_precision

        quantity = round_quantity(calculate_quantity(amount, leverage, entry_price), quantity_decimals)
        if quantity <= 0:
            raise ValidationError(
                f"Position size ${amount:.2f} at {leverage}x is below the minimum quantity for {symbol}"
            )

        logger.info(
            f"Opening {side} {quantity} {symbol} ({intent.order_type}) "
            f"amount=${amount:.2f} leverage={leverage}x price={entry_price}"
        )
        if leverage > 1:
            await client.set_leverage(symbol, leverage)
        if intent.order_type == "limit":
            entry = await client.place_limit_order(symbol, side, quantity, round_price(entry_price, price_decimals))
        else:
            entry = await client.place_market_order(symbol, side, quantity)

        stop_price = intent.stop_loss_price
        stop_percent = intent.stop_loss_percent or risk_settings.default_stop_loss_percent
        if stop_price is None and stop_percent:
            stop_price = calculate_stop_loss(side, entry_price, stop_percent, leverage)
        take_profit_price = intent.take_profit_price
        take_profit_percent = intent.take_profit_percent or risk_settings.default_take_profit_percent
        if take_profit_price is None and take_profit_percent:
            take_profit_price = calculate_take_profit(side, entry_price, take_profit_percent, leverage)

        exit_side = opposite_side(side)
        unprotected: List[str] = []
        stop_loss_order_id = take_profit_order_id = None

        trailing = intent.trailing_stop_distance or intent.trailing_stop_percent
        if trailing and not client.supports_trailing_stop:
            logger.warning(f"{intent.exchange} has no trailing stops, skipping trailing stop for {symbol}")
            trailing = None

        if stop_price is not None and stop_price <= 0:
            logger.warning(
                f"Computed stop {stop_price} for {symbol} is not a valid price "
                f"(stop {stop_percent}% at {leverage}x), skipping stop loss"
            )
            stop_price = None
            if not trailing:
                unprotected.append("stop_loss")

        if trailing:
            # Both forms are derived so each venue can use the one it trails by
            distance = intent.trailing_stop_distance or entry_price * intent.trailing_stop_percent / 100
            callback_rate = intent.trailing_stop_percent or intent.trailing_stop_distance / entry_price * 100
            try:
                order = await client.place_trailing_stop(
                    symbol, exit_side, quantity,
                    distance=round_price(distance, price_decimals),
                    callback_rate=callback_rate,
                )
                stop_loss_order_id = order["order_id"]
                stop_price = None
                logger.info(f"Trailing stop for {symbol} placed (distance={distance}, rate={callback_rate}%)")
            except AppError as e:
                logger.error(f"Trailing stop for {symbol} failed: {e.message}")
                if not stop_price:
                    unprotected.append("stop_loss")

        if stop_price and stop_loss_order_id is None:
            stop_price = round_price(stop_price, price_decimals)
            try:
                order = await client.place_stop_loss(symbol, exit_side, quantity, stop_price)
                stop_loss_order_id = order["order_id"]
            except AppError as e:
                logger.error(f"Stop loss for {symbol} failed, position is unprotected: {e.message}")
                unprotected.append("stop_loss")

        if take_profit_price:
            take_profit_price = round_price(take_profit_price, price_decimals)
            try:
                order = await client.place_take_profit(symbol, exit_side, quantity, take_profit_price)
                take_profit_order_id = order["order_id"]
            except AppError as e:
                logger.error(f"Take profit for {symbol} failed: {e.message}")
                unprotected.append("take_profit")

        warnings: List[str] = []
        if unprotected:
            partial = PartialExecution(
                f"Entry filled but {' and '.join(unprotected)} order failed for {symbol}",
                unprotected_sides=unprotected,
            )
            warnings.append(partial.message)
            self._notify(intent.account_id, EVENT_TRADE_FAILED, {
                "exchange": intent.exchange,
                "symbol": symbol,
                "action": intent.action.value,
                "error_kind": partial.kind,
                "error": partial.message,
                "unprotected_sides": unprotected,
            })

        position = await self.store.upsert(PositionSnapshot(
            account_id=intent.account_id,
            exchange=intent.exchange,
            symbol=symbol,
            side=side,
            entry_price=entry_price,
            quantity=quantity,
            leverage=leverage,
            position_size_usd=amount,
            entry_order_id=entry["order_id"],
            stop_loss_order_id=stop_loss_order_id,
            take_profit_order_id=take_profit_order_id,
            stop_loss_price=stop_price,
            take_profit_price=take_profit_price,
            unprotected_sides=unprotected,
            opened_at=datetime.now(timezone.utc),
        ))
        return position, warnings

    # ==========================================================
    # CLOSE
    # ==========================================================

    async def _close_position(
        self,
        account_id: str,
        exchange: str,
        symbol: str,
        client: ExchangeClient,
        risk_settings: RiskSettings,
        exit_reason: str = EXIT_REASON_SIGNAL,
        sell_percentage: Optional[float] = None,
    ) -> TradeResult:
        tracked = self.store.get(account_id, exchange, symbol)
        venue_position = await client.get_position(symbol)

        if venue_position is None:
            logger.info(f"No open {symbol} position on {exchange}")
            if tracked is not None:
                await self.store.remove(account_id, exchange, symbol)
            return TradeResult(success=True, action="no_position", message="No position to close")

        position_side = venue_position["side"]
        full_quantity = float(venue_position["quantity"])
        quantity = partial_close_quantity(
            full_quantity, sell_percentage, _quantity_decimals(client, symbol, risk_settings)
        )
        is_partial = quantity < full_quantity

        try:
            order = await client.close_position(symbol, opposite_side(position_side), quantity)
        except AppError as e:
            self._notify(account_id, EVENT_TRADE_FAILED, {
                "exchange": exchange,
                "symbol": symbol,
                "action": "close",
                "error_kind": e.kind,
                "error": e.message,
            })
            raise

        entry_price = float(venue_position.get("entry_price") or (tracked.entry_price if tracked else 0))
        exit_price = venue_position.get("mark_price")
        if not exit_price:
            exit_price = (await client.get_ticker(symbol))["price"]
        exit_price = float(exit_price)

        amount = tracked.position_size_usd if tracked and tracked.position_size_usd else None
        if amount is None:
            amount = resolve_trade_amount(
                settings.default_trade_amount,
                venue_override=risk_settings.trade_amount_override,
                venue_amount=risk_settings.trade_amount,
                position_multiplier=risk_settings.position_multiplier,
            )
        pnl = calculate_pnl(position_side, entry_price, exit_price, quantity)
        pnl_percent = calculate_pnl_percent(pnl, amount)

        logger.info(
            f"Closed {quantity}/{full_quantity} {symbol} on {exchange} ({exit_reason}): "
            f"PnL ${pnl:.2f} ({pnl_percent:.2f}%)"
        )

        if tracked is not None and not is_partial:
            await self._cancel_protective_orders(client, tracked)

        await self._record_trade(
            account_id, exchange, symbol, position_side, entry_price, exit_price, quantity,
            amount, pnl, pnl_percent, exit_reason, tracked,
        )

        if is_partial:
            if tracked is not None:
                await self.store.update(account_id, exchange, symbol, quantity=full_quantity - quantity)
        else:
            await self.store.remove(account_id, exchange, symbol)

        await self.risk_counters.invalidate(account_id, exchange)
        self._notify(
            account_id,
            EVENT_POSITION_CLOSED_PROFIT if pnl >= 0 else EVENT_POSITION_CLOSED_LOSS,
            {
                "exchange": exchange,
                "symbol": symbol,
                "pnl_usd": round(pnl, 2),
                "pnl_percent": round(pnl_percent, 2),
                "exit_reason": exit_reason,
            },
        )

        return TradeResult(
            success=True,
            action="closed",
            message=f"Closed {quantity} {symbol}",
            position=self.store.get(account_id, exchange, symbol) if is_partial else None,
            close_summary=CloseSummary(
                symbol=symbol,
                side=position_side,
                entry_price=entry_price,
                exit_price=exit_price,
                quantity=quantity,
                pnl_usd=round(pnl, 4),
                pnl_percent=round(pnl_percent, 4),
                exit_reason=exit_reason,
                partial=is_partial,
                order_id=order.get("order_id"),
            ),
        )

    async def _cancel_protective_orders(self, client: ExchangeClient, position: PositionSnapshot):
        for label, order_id in (
            ("stop loss", position.stop_loss_order_id),
            ("take profit", position.take_profit_order_id),
        ):
            if not order_id:
                continue
            try:
                await client.cancel_order(position.symbol, order_id)
                logger.info(f"Cancelled {label} order {order_id} for {position.symbol}")
            except AppError as e:
                # Usually already filled or cancelled with the position
                logger.warning(f"Could not cancel {label} order {order_id} for {position.symbol}: {e.message}")

    async def _record_trade(
        self,
        account_id: str,
        exchange: str,
        symbol: str,
        side: str,
        entry_price: float,
        exit_price: float,
        quantity: float,
        amount: float,
        pnl: float,
        pnl_percent: float,
        exit_reason: str,
        tracked: Optional[PositionSnapshot],
    ):
        """Append to the ledger. The position is already closed, so failures are logged only."""
        opened_at = tracked.opened_at if tracked else None
        if opened_at is not None and opened_at.tzinfo is not None:
            opened_at = opened_at.astimezone(timezone.utc).replace(tzinfo=None)
        try:
            async with self._session_maker() as db:
                db.add(TradeRecord(
                    account_id=account_id,
                    exchange=exchange,
                    symbol=symbol,
                    side=side,
                    asset_class=_asset_class(exchange),
                    entry_price=entry_price,
                    exit_price=exit_price,
                    quantity=quantity,
                    position_size_usd=amount,
                    entry_time=opened_at,
                    exit_time=datetime.utcnow(),
                    stop_loss_price=tracked.stop_loss_price if tracked else None,
                    take_profit_price=tracked.take_profit_price if tracked else None,
                    pnl_usd=round(pnl, 4),
                    pnl_percent=round(pnl_percent, 4),
                    exit_reason=exit_reason,
                ))
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to record {symbol} trade in ledger: {e}", exc_info=True)

    # ==========================================================
    # MONITOR HOOKS
    # ==========================================================

    async def close_for_account(
        self,
        account_id: str,
        exchange: str,
        symbol: str,
        client: ExchangeClient,
        risk_settings: RiskSettings,
        exit_reason: str,
    ) -> TradeResult:
        """Close under the key lock on behalf of a background monitor."""
        async with self._key_lock(PositionKey(account_id, exchange, symbol)):
            return await self._close_position(
                account_id, exchange, symbol, client, risk_settings, exit_reason=exit_reason
            )
