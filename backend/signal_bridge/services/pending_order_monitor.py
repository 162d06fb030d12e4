"""
Pending order expiry monitor

For every (account, exchange) with cancel_pending_orders enabled, cancels
resting entry orders that outlived cancel_pending_after:

    "1m", "15m", "1h", ...   cancel once the order is at least that old
    "before_session"         cancel from 5 minutes before the session ends

Invalid durations fall back to 15 minutes. Protective orders (stop / take
profit, or any order id the position store knows as an SL/TP) are never
touched. Cancel failures are logged and retried on the next tick.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set

from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.services.exchange_service import get_exchange_client
from signal_bridge.services.position_store import PositionStore
from signal_bridge.services.settings_service import RiskSettings, settings_service
from signal_bridge.services.trading_window import minutes_in_zone, session_end_minutes

logger = logging.getLogger(__name__)

BEFORE_SESSION = "before_session"
DEFAULT_CANCEL_AFTER = timedelta(minutes=15)
SESSION_END_BUFFER_MINUTES = 5

_DURATION_RE = re.compile(r"^(\d+)([mh])$")
_PROTECTIVE_TYPE_MARKERS = ("stop", "take_profit", "trailing")


def parse_cancel_after(value: Optional[str]) -> Optional[timedelta]:
    """'15m' -> 15 minutes, '1h' -> 1 hour, 'before_session' -> None."""
    if value == BEFORE_SESSION:
        return None
    match = _DURATION_RE.match(str(value or "").strip())
    if not match:
        logger.warning(f"Invalid cancel_pending_after '{value}', defaulting to 15m")
        return DEFAULT_CANCEL_AFTER
    amount, unit = int(match.group(1)), match.group(2)
    return timedelta(minutes=amount) if unit == "m" else timedelta(hours=amount)


def parse_order_time(value: Any) -> Optional[datetime]:
    """Epoch seconds / milliseconds or an ISO-8601 string -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or str(value).isdigit():
        number = float(value)
        if number > 1e10:
            number = number / 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc)
    text = str(value).replace("Z", "+00:00")
    # Nanosecond timestamps (OANDA) carry more fraction digits than datetime accepts
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_protective_order(order: Dict[str, Any]) -> bool:
    order_type = str(order.get("type") or "").lower()
    return any(marker in order_type for marker in _PROTECTIVE_TYPE_MARKERS)


def should_cancel(
    order: Dict[str, Any],
    risk_settings: RiskSettings,
    now: Optional[datetime] = None,
) -> bool:
    """Whether a resting order has expired under the account's settings."""
    now = now or datetime.now(timezone.utc)
    cancel_after = parse_cancel_after(risk_settings.cancel_pending_after)

    if cancel_after is None:
        end_minutes, tz_name = session_end_minutes(
            risk_settings.trading_hours_preset, risk_settings.trading_window
        )
        return minutes_in_zone(now, tz_name) >= end_minutes - SESSION_END_BUFFER_MINUTES

    created_at = parse_order_time(order.get("created_at"))
    if created_at is None:
        return False
    return now - created_at >= cancel_after


class PendingOrderMonitor:
    """Cancel stale resting orders per the account's cancel_pending_* settings."""

    def __init__(
        self,
        client_provider=None,
        settings_reader=None,
        store: Optional[PositionStore] = None,
        session_maker=None,
        interval_seconds: Optional[int] = None,
    ):
        self.interval_seconds = interval_seconds or settings.pending_order_interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._client_provider = client_provider or get_exchange_client
        self._settings = settings_reader or settings_service
        self._store = store
        self._session_maker = session_maker or async_session_maker
        self._processing: Set[str] = set()

    async def start(self):
        """Start the pending order monitoring loop"""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Pending order monitor started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the pending order monitoring loop"""
        self.running = False
        if self.task:
            await self.task
            logger.info("Pending order monitor stopped")

    async def _monitor_loop(self):
        while self.running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Pending order monitor error: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    def _protective_order_ids(self, account_id: str, exchange: str) -> Set[str]:
        if self._store is None:
            return set()
        ids = set()
        for position in self._store.list_for(account_id, exchange):
            ids.update(i for i in (position.stop_loss_order_id, position.take_profit_order_id) if i)
        return ids

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """One pass over every enabled (account, exchange). Returns orders cancelled."""
        async with self._session_maker() as db:
            all_settings = [s for s in await self._settings.list_all(db) if s.cancel_pending_orders]
            cancelled = 0
            for risk_settings in all_settings:
                try:
                    client = await self._client_provider(db, risk_settings.account_id, risk_settings.exchange)
                    if client is None:
                        continue
                    cancelled += await self._sweep_account(client, risk_settings, now)
                except Exception as e:
                    logger.warning(
                        f"Pending order sweep failed for {risk_settings.account_id}/{risk_settings.exchange}: {e}"
                    )
        return cancelled

    async def _sweep_account(self, client, risk_settings: RiskSettings, now: Optional[datetime]) -> int:
        orders = await client.get_open_orders()
        if not orders:
            return 0

        protected = self._protective_order_ids(risk_settings.account_id, risk_settings.exchange)
        cancelled = 0
        for order in orders:
            order_id = order.get("order_id")
            if not order_id or order_id in self._processing:
                continue
            if order_id in protected or is_protective_order(order):
                continue
            if not should_cancel(order, risk_settings, now):
                continue

            self._processing.add(order_id)
            try:
                logger.info(
                    f"[{risk_settings.exchange}] Cancelling pending order {order_id} ({order.get('symbol')}): "
                    f"exceeded {risk_settings.cancel_pending_after}"
                )
                await client.cancel_order(order.get("symbol"), order_id)
                cancelled += 1
            except Exception as e:
                logger.error(f"[{risk_settings.exchange}] Failed to cancel pending order {order_id}: {e}")
            finally:
                self._processing.discard(order_id)
        return cancelled
