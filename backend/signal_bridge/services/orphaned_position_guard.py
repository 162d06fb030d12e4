"""
Orphaned position guard

For each (account, exchange) with close_orphaned_positions enabled:
  1. Fetch venue positions and resting orders
  2. A position with no active exit order for its symbol (any stop type, or
     an order on the closing side) is "orphaned" and starts a grace timer
  3. Once orphaned for longer than orphan_grace_minutes it is closed at
     market through the executor (reduce-only, recorded in the ledger)

The timer clears when an exit order reappears or the position disappears.
The grace period covers the gap between an entry fill and its bracket
orders being acknowledged.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.exchange_clients.base import ORDER_STATUS_OPEN, ORDER_STATUS_PARTIALLY_FILLED
from signal_bridge.exchange_clients.symbols import canonical_symbol
from signal_bridge.services.exchange_service import get_exchange_client
from signal_bridge.services.settings_service import RiskSettings, settings_service

logger = logging.getLogger(__name__)

EXIT_REASON_ORPHANED = "ORPHANED"

ACTIVE_STATUSES = {ORDER_STATUS_OPEN, ORDER_STATUS_PARTIALLY_FILLED}
EXIT_SIDES_LONG = {"sell", "sell_to_close"}
EXIT_SIDES_SHORT = {"buy", "buy_to_cover"}
EXIT_TYPE_MARKERS = ("stop", "trailing")

OrphanKey = Tuple[str, str, str]


def has_active_exit_order(
    symbol: str, is_long: bool, orders: List[Dict[str, Any]], symbol_key: Callable[[str], str] = canonical_symbol
) -> bool:
    """Whether any active order for symbol would take the position off."""
    for order in orders:
        if symbol_key(order.get("symbol") or "") != symbol:
            continue
        if str(order.get("status") or "").lower() not in ACTIVE_STATUSES:
            continue
        order_type = str(order.get("type") or "").lower()
        if any(marker in order_type for marker in EXIT_TYPE_MARKERS):
            return True
        side = str(order.get("side") or "").lower()
        if is_long and side in EXIT_SIDES_LONG:
            return True
        if not is_long and side in EXIT_SIDES_SHORT:
            return True
    return False


class OrphanedPositionGuard:
    """Close venue positions left without any exit order."""

    def __init__(
        self,
        executor,
        client_provider=None,
        settings_reader=None,
        session_maker=None,
        interval_seconds: Optional[int] = None,
    ):
        self.interval_seconds = interval_seconds or settings.orphan_guard_interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._executor = executor
        self._client_provider = client_provider or get_exchange_client
        self._settings = settings_reader or settings_service
        self._session_maker = session_maker or async_session_maker
        self._first_seen: Dict[OrphanKey, datetime] = {}

    async def start(self):
        """Start the orphan guard loop"""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Orphaned position guard started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the orphan guard loop"""
        self.running = False
        if self.task:
            await self.task
            self._first_seen.clear()
            logger.info("Orphaned position guard stopped")

    async def _monitor_loop(self):
        while self.running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Orphaned position guard error: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    def orphaned_since(self, account_id: str, exchange: str, symbol: str) -> Optional[datetime]:
        return self._first_seen.get((account_id, exchange, symbol))

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """One pass. Returns the number of positions closed."""
        now = now or datetime.now(timezone.utc)
        async with self._session_maker() as db:
            enabled = [s for s in await self._settings.list_all(db) if s.close_orphaned_positions]
            closed = 0
            for risk_settings in enabled:
                try:
                    client = await self._client_provider(db, risk_settings.account_id, risk_settings.exchange)
                    if client is None:
                        logger.debug(
                            f"No credentials for {risk_settings.account_id}/{risk_settings.exchange}, skipping"
                        )
                        continue
                    closed += await self._check_account(client, risk_settings, now)
                except Exception as e:
                    logger.warning(
                        f"Orphan check failed for {risk_settings.account_id}/{risk_settings.exchange}: {e}"
                    )
        return closed

    def _tracked_symbol(self, account_id: str, exchange: str, client, key: str) -> Optional[str]:
        """Symbol the executor tracks for a venue listing, if any."""
        for tracked in self._executor.store.list_for(account_id, exchange):
            if client.symbol_key(tracked.symbol) == key:
                return tracked.symbol
        return None

    async def _check_account(self, client, risk_settings: RiskSettings, now: datetime) -> int:
        account_id, exchange = risk_settings.account_id, risk_settings.exchange
        grace = timedelta(minutes=risk_settings.orphan_grace_minutes or 5)

        positions = [p for p in await client.get_positions() if p.get("quantity")]
        open_symbols = {client.symbol_key(p["symbol"]) for p in positions}
        for key in list(self._first_seen):
            if key[0] == account_id and key[1] == exchange and key[2] not in open_symbols:
                del self._first_seen[key]
        if not positions:
            return 0

        orders = await client.get_open_orders()
        closed = 0
        for position in positions:
            symbol = client.symbol_key(position["symbol"])
            key = (account_id, exchange, symbol)
            is_long = position.get("side") == "BUY"

            if has_active_exit_order(symbol, is_long, orders, client.symbol_key):
                if self._first_seen.pop(key, None) is not None:
                    logger.debug(f"Exit order reappeared for {symbol} ({account_id}), orphan flag cleared")
                continue

            first_seen = self._first_seen.get(key)
            if first_seen is None:
                self._first_seen[key] = now
                logger.info(
                    f"No exit orders for {symbol} ({account_id} {exchange}), "
                    f"starting {risk_settings.orphan_grace_minutes}m grace period"
                )
                continue

            age = now - first_seen
            if age < grace:
                continue

            logger.warning(
                f"{symbol} has had no exit orders for {int(age.total_seconds() // 60)}m, "
                f"closing at market ({account_id} {exchange})"
            )
            try:
                close_symbol = (
                    self._tracked_symbol(account_id, exchange, client, symbol)
                    or canonical_symbol(position["symbol"])
                )
                await self._executor.close_for_account(
                    account_id, exchange, close_symbol, client, risk_settings, exit_reason=EXIT_REASON_ORPHANED
                )
                self._first_seen.pop(key, None)
                closed += 1
            except Exception as e:
                logger.error(f"Failed to close orphaned {symbol} for {account_id}: {e}")
        return closed
