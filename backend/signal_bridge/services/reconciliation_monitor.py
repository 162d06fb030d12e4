"""
Position reconciliation monitor

Periodically converges the position store with each venue:
- Updates quantity, mark price and unrealized PnL
- Drops positions closed outside the service (manual close, TP/SL fill)

Only (account, exchange) pairs that currently hold a tracked position are
swept, one venue call per pair.
"""

import asyncio
import logging
from typing import Optional

from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.services.exchange_service import get_exchange_client
from signal_bridge.services.position_store import PositionStore

logger = logging.getLogger(__name__)


class PositionReconciliationMonitor:
    """Sync tracked positions with venue state."""

    def __init__(
        self,
        store: PositionStore,
        client_provider=None,
        session_maker=None,
        interval_seconds: Optional[int] = None,
    ):
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._store = store
        self._client_provider = client_provider or get_exchange_client
        self._session_maker = session_maker or async_session_maker

    async def start(self):
        """Start the reconciliation loop"""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Position reconciliation monitor started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the reconciliation loop"""
        self.running = False
        if self.task:
            await self.task
            logger.info("Position reconciliation monitor stopped")

    async def _monitor_loop(self):
        """Main monitoring loop"""
        while self.running:
            try:
                await self.sync_positions()
            except Exception as e:
                logger.error(f"Reconciliation monitor error: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    async def sync_positions(self):
        """Reconcile every (account, exchange) that has tracked positions"""
        pairs = self._store.tracked_accounts()
        if not pairs:
            return

        async with self._session_maker() as db:
            for account_id, exchange in pairs:
                try:
                    client = await self._client_provider(db, account_id, exchange)
                    if client is None:
                        logger.debug(f"No {exchange} client for account {account_id}, skipping sync")
                        continue
                    result = await self._store.reconcile(account_id, exchange, client)
                    if result["removed"]:
                        logger.info(
                            f"Reconciled {account_id}/{exchange}: {result['updated']} updated, "
                            f"{result['removed']} closed outside the service"
                        )
                except Exception as e:
                    logger.warning(f"Failed to reconcile {account_id}/{exchange}: {e}")
