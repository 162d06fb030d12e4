"""
Settings Service

Read-only access to per-(account, exchange) risk and sizing settings stored
in exchange_settings. Snapshots are cached for settings_refresh_seconds so
a burst of alerts does not re-query the table; rows that do not exist yet
resolve to defaults (every numeric cap 0 = unlimited).
"""

import json
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signal_bridge.cache import SimpleCache
from signal_bridge.config import settings
from signal_bridge.models import ExchangeSettings

logger = logging.getLogger(__name__)

DEFAULT_TRADING_WINDOW = ("00:00", "23:59")


def normalize_trading_window(value) -> Tuple[str, str]:
    """Accept ["09:30", "16:00"], ("09:30", "16:00") or a JSON string of either."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return DEFAULT_TRADING_WINDOW
    if isinstance(value, (list, tuple)) and len(value) == 2 and value[0] and value[1]:
        return str(value[0]), str(value[1])
    return DEFAULT_TRADING_WINDOW


class RiskSettings(BaseModel):
    """Immutable snapshot of one (account, exchange) settings row."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    exchange: str

    # Admission control
    kill_switch: bool = False
    allow_weekends: bool = True
    max_signal_age_sec: int = 10
    max_daily_loss_usd: float = 0.0
    max_consecutive_failures: int = 0
    max_concurrent_positions: int = 0
    max_position_size_usd: float = 0.0
    max_trades_per_week: int = 0
    max_loss_per_week_usd: float = 0.0

    # Sizing
    trade_amount: Optional[float] = None
    trade_amount_override: Optional[float] = None
    position_multiplier: float = 1.0
    leverage: int = 1
    quantity_precision: Optional[int] = None
    default_stop_loss_percent: Optional[float] = None
    default_take_profit_percent: Optional[float] = None

    # Trading window
    trading_hours_preset: str = "24/7"
    trading_window: Tuple[str, str] = DEFAULT_TRADING_WINDOW
    auto_close_outside_window: bool = False

    # Sweeps
    cancel_pending_orders: bool = False
    cancel_pending_after: str = "15m"
    close_orphaned_positions: bool = False
    orphan_grace_minutes: int = 5

    @classmethod
    def defaults(cls, account_id: str, exchange: str) -> "RiskSettings":
        return cls(account_id=account_id, exchange=exchange)

    @classmethod
    def from_row(cls, row: ExchangeSettings) -> "RiskSettings":
        def pick(name, default):
            value = getattr(row, name, None)
            return default if value is None else value

        return cls(
            account_id=row.account_id,
            exchange=row.exchange,
            kill_switch=pick("kill_switch", False),
            allow_weekends=pick("allow_weekends", True),
            max_signal_age_sec=pick("max_signal_age_sec", 10),
            max_daily_loss_usd=pick("max_daily_loss_usd", 0.0),
            max_consecutive_failures=pick("max_consecutive_failures", 0),
            max_concurrent_positions=pick("max_concurrent_positions", 0),
            max_position_size_usd=pick("max_position_size_usd", 0.0),
            max_trades_per_week=pick("max_trades_per_week", 0),
            max_loss_per_week_usd=pick("max_loss_per_week_usd", 0.0),
            trade_amount=row.trade_amount,
            trade_amount_override=row.trade_amount_override,
            position_multiplier=pick("position_multiplier", 1.0),
            leverage=pick("leverage", 1),
            quantity_precision=row.quantity_precision,
            default_stop_loss_percent=row.default_stop_loss_percent,
            default_take_profit_percent=row.default_take_profit_percent,
            trading_hours_preset=pick("trading_hours_preset", "24/7"),
            trading_window=normalize_trading_window(row.trading_window),
            auto_close_outside_window=pick("auto_close_outside_window", False),
            cancel_pending_orders=pick("cancel_pending_orders", False),
            cancel_pending_after=pick("cancel_pending_after", "15m"),
            close_orphaned_positions=pick("close_orphaned_positions", False),
            orphan_grace_minutes=pick("orphan_grace_minutes", 5),
        )


class SettingsService:
    """Cached reader for ExchangeSettings rows."""

    def __init__(self, cache: Optional[SimpleCache] = None, ttl_seconds: Optional[int] = None):
        self._cache = cache or SimpleCache()
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.settings_refresh_seconds

    async def get(self, db: AsyncSession, account_id: str, exchange: str) -> RiskSettings:
        """Settings snapshot for one (account, exchange), defaults when unset."""

        async def fetch() -> RiskSettings:
            result = await db.execute(
                select(ExchangeSettings).where(
                    ExchangeSettings.account_id == account_id,
                    ExchangeSettings.exchange == exchange,
                )
            )
            row = result.scalars().first()
            if row is None:
                return RiskSettings.defaults(account_id, exchange)
            return RiskSettings.from_row(row)

        return await self._cache.get_or_fetch(
            f"settings:{account_id}:{exchange}", fetch, self._ttl
        )

    async def list_all(self, db: AsyncSession) -> List[RiskSettings]:
        """Every configured (account, exchange) pair, uncached (monitor sweeps)."""
        result = await db.execute(select(ExchangeSettings))
        return [RiskSettings.from_row(row) for row in result.scalars().all()]

    async def invalidate(self, account_id: Optional[str] = None, exchange: Optional[str] = None):
        if account_id and exchange:
            await self._cache.delete(f"settings:{account_id}:{exchange}")
        elif account_id:
            await self._cache.delete_prefix(f"settings:{account_id}:")
        else:
            await self._cache.clear()


settings_service = SettingsService()
