"""
Risk counters derived from the trade ledger

Daily realized loss (since 00:00 UTC), weekly trade count and weekly loss
(since Monday 00:00 UTC) for one (account, exchange). Each figure is cached
for risk_cache_ttl_seconds under

    risk:{account}:{exchange}:{metric}:{period_start}

so a new period automatically gets a fresh key. Only metrics whose limit is
configured are queried.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select

from signal_bridge.cache import SimpleCache
from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.models import TradeRecord
from signal_bridge.services.risk_engine import RiskCounterSnapshot, day_start, week_start
from signal_bridge.services.settings_service import RiskSettings

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    """Ledger timestamps are stored as naive UTC."""
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RiskCounters:
    """Cached ledger aggregates feeding the risk engine."""

    def __init__(
        self,
        session_maker=None,
        cache: Optional[SimpleCache] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self._session_maker = session_maker or async_session_maker
        self._cache = cache or SimpleCache()
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.risk_cache_ttl_seconds

    @staticmethod
    def cache_key(account_id: str, exchange: str, metric: str, period_start: datetime) -> str:
        return f"risk:{account_id}:{exchange}:{metric}:{period_start.isoformat()}"

    async def _loss_since(self, account_id: str, exchange: str, since: datetime) -> float:
        async with self._session_maker() as db:
            result = await db.execute(
                select(func.coalesce(func.sum(TradeRecord.pnl_usd), 0.0)).where(
                    TradeRecord.account_id == account_id,
                    TradeRecord.exchange == exchange,
                    TradeRecord.exit_time >= _naive_utc(since),
                    TradeRecord.pnl_usd < 0,
                )
            )
            return abs(float(result.scalar() or 0.0))

    async def _trades_since(self, account_id: str, exchange: str, since: datetime) -> int:
        async with self._session_maker() as db:
            result = await db.execute(
                select(func.count(TradeRecord.id)).where(
                    TradeRecord.account_id == account_id,
                    TradeRecord.exchange == exchange,
                    TradeRecord.exit_time >= _naive_utc(since),
                )
            )
            return int(result.scalar() or 0)

    async def daily_loss(self, account_id: str, exchange: str, now: Optional[datetime] = None) -> float:
        start = day_start(now or datetime.now(timezone.utc))
        return await self._cache.get_or_fetch(
            self.cache_key(account_id, exchange, "daily_loss", start),
            lambda: self._loss_since(account_id, exchange, start),
            self._ttl,
        )

    async def weekly_trade_count(
        self, account_id: str, exchange: str, now: Optional[datetime] = None
    ) -> int:
        start = week_start(now or datetime.now(timezone.utc))
        return await self._cache.get_or_fetch(
            self.cache_key(account_id, exchange, "weekly_trades", start),
            lambda: self._trades_since(account_id, exchange, start),
            self._ttl,
        )

    async def weekly_loss(self, account_id: str, exchange: str, now: Optional[datetime] = None) -> float:
        start = week_start(now or datetime.now(timezone.utc))
        return await self._cache.get_or_fetch(
            self.cache_key(account_id, exchange, "weekly_loss", start),
            lambda: self._loss_since(account_id, exchange, start),
            self._ttl,
        )

    async def snapshot(
        self,
        risk_settings: RiskSettings,
        open_positions: int = 0,
        consecutive_failures: int = 0,
        now: Optional[datetime] = None,
    ) -> RiskCounterSnapshot:
        """Gather the figures the configured limits need."""
        account_id, exchange = risk_settings.account_id, risk_settings.exchange
        counters = RiskCounterSnapshot(
            open_positions=open_positions,
            consecutive_failures=consecutive_failures,
        )
        if risk_settings.max_daily_loss_usd:
            counters.daily_loss_usd = await self.daily_loss(account_id, exchange, now)
        if risk_settings.max_trades_per_week:
            counters.weekly_trades = await self.weekly_trade_count(account_id, exchange, now)
        if risk_settings.max_loss_per_week_usd:
            counters.weekly_loss_usd = await self.weekly_loss(account_id, exchange, now)
        return counters

    async def invalidate(self, account_id: str, exchange: str) -> None:
        """Drop cached figures after a trade completes."""
        await self._cache.delete_prefix(f"risk:{account_id}:{exchange}:")
        logger.debug(f"Invalidated risk counters for {account_id}/{exchange}")
