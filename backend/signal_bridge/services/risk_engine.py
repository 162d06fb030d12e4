"""
Pre-trade Risk Engine

`evaluate()` is a pure function of (intent, settings, counters, now) and
performs no I/O. Counters are gathered beforehand by RiskCounters and
FailureCounter.

Checks run in a fixed order and the first failing check wins:
    1. kill_switch
    2. weekend
    3. outside_trading_window   (only when a non all-day window is set)
    4. signal_age
    5. daily_loss
    6. consecutive_failures
    7. concurrent_positions
    8. max_position_size        (a cap on the amount, never a deny)
    9. weekly_trades
   10. weekly_loss

Close intents bypass every check, the kill switch included.
A limit of 0 or None means unlimited.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from signal_bridge.schemas.trade_intent import TradeIntent
from signal_bridge.services.settings_service import RiskSettings
from signal_bridge.services.trading_window import (
    is_all_day,
    is_weekend,
    is_within_trading_window,
)

logger = logging.getLogger(__name__)

LIMIT_KILL_SWITCH = "kill_switch"
LIMIT_WEEKEND = "weekend"
LIMIT_TRADING_WINDOW = "outside_trading_window"
LIMIT_SIGNAL_AGE = "signal_age"
LIMIT_DAILY_LOSS = "daily_loss"
LIMIT_CONSECUTIVE_FAILURES = "consecutive_failures"
LIMIT_CONCURRENT_POSITIONS = "concurrent_positions"
LIMIT_WEEKLY_TRADES = "weekly_trades"
LIMIT_WEEKLY_LOSS = "weekly_loss"


@dataclass
class RiskCounterSnapshot:
    """Current usage figures for one (account, exchange)."""
    daily_loss_usd: float = 0.0
    consecutive_failures: int = 0
    open_positions: int = 0
    weekly_trades: int = 0
    weekly_loss_usd: float = 0.0


@dataclass
class RiskDecision:
    allowed: bool
    limit_type: Optional[str] = None
    reason: str = ""
    current: Optional[float] = None
    limit: Optional[float] = None
    max_position_size: Optional[float] = None  # Cap to apply to the entry amount

    @classmethod
    def allow(cls, max_position_size: Optional[float] = None) -> "RiskDecision":
        return cls(allowed=True, max_position_size=max_position_size)

    @classmethod
    def deny(cls, limit_type: str, reason: str, current=None, limit=None) -> "RiskDecision":
        return cls(allowed=False, limit_type=limit_type, reason=reason, current=current, limit=limit)


def week_start(now: datetime) -> datetime:
    """Monday 00:00 UTC of the week containing `now`."""
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    monday = now - timedelta(days=now.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    """00:00 UTC of the day containing `now`."""
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _limited(value) -> bool:
    return bool(value) and value > 0


def evaluate(
    intent: TradeIntent,
    settings: RiskSettings,
    counters: RiskCounterSnapshot,
    now: Optional[datetime] = None,
) -> RiskDecision:
    """
    Decide whether an intent may proceed.

    Returns:
        RiskDecision; allowed decisions carry max_position_size (or None)
        for the executor to clamp the entry amount with.
    """
    if not intent.is_entry:
        return RiskDecision.allow()

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    if settings.kill_switch:
        return RiskDecision.deny(
            LIMIT_KILL_SWITCH, f"Kill switch is enabled for {settings.exchange}"
        )

    if not settings.allow_weekends and is_weekend(now):
        return RiskDecision.deny(LIMIT_WEEKEND, "Weekend trading is disabled")

    if not is_all_day(settings.trading_hours_preset, settings.trading_window):
        if not is_within_trading_window(settings.trading_hours_preset, settings.trading_window, now):
            return RiskDecision.deny(
                LIMIT_TRADING_WINDOW,
                f"Outside trading window ({settings.trading_hours_preset})",
            )

    if _limited(settings.max_signal_age_sec) and intent.signal_timestamp is not None:
        age = (now - intent.signal_timestamp).total_seconds()
        if age > settings.max_signal_age_sec:
            return RiskDecision.deny(
                LIMIT_SIGNAL_AGE,
                f"Signal is {age:.1f}s old (max {settings.max_signal_age_sec}s)",
                current=round(age, 3),
                limit=settings.max_signal_age_sec,
            )

    if _limited(settings.max_daily_loss_usd) and counters.daily_loss_usd >= settings.max_daily_loss_usd:
        return RiskDecision.deny(
            LIMIT_DAILY_LOSS,
            f"Daily loss ${counters.daily_loss_usd:.2f} reached limit ${settings.max_daily_loss_usd:.2f}",
            current=counters.daily_loss_usd,
            limit=settings.max_daily_loss_usd,
        )

    if (
        _limited(settings.max_consecutive_failures)
        and counters.consecutive_failures >= settings.max_consecutive_failures
    ):
        return RiskDecision.deny(
            LIMIT_CONSECUTIVE_FAILURES,
            f"{counters.consecutive_failures} consecutive failures "
            f"(limit {settings.max_consecutive_failures})",
            current=counters.consecutive_failures,
            limit=settings.max_consecutive_failures,
        )

    if (
        _limited(settings.max_concurrent_positions)
        and counters.open_positions >= settings.max_concurrent_positions
    ):
        return RiskDecision.deny(
            LIMIT_CONCURRENT_POSITIONS,
            f"{counters.open_positions} open positions (limit {settings.max_concurrent_positions})",
            current=counters.open_positions,
            limit=settings.max_concurrent_positions,
        )

    cap = settings.max_position_size_usd if _limited(settings.max_position_size_usd) else None

    if _limited(settings.max_trades_per_week) and counters.weekly_trades >= settings.max_trades_per_week:
        next_monday = week_start(now) + timedelta(days=7)
        return RiskDecision.deny(
            LIMIT_WEEKLY_TRADES,
            f"Maximum trades per week limit exceeded. You have executed {counters.weekly_trades} "
            f"trades this week (limit: {settings.max_trades_per_week}). "
            f"Limit resets on {next_monday:%Y-%m-%d}.",
            current=counters.weekly_trades,
            limit=settings.max_trades_per_week,
        )

    if _limited(settings.max_loss_per_week_usd) and counters.weekly_loss_usd >= settings.max_loss_per_week_usd:
        next_monday = week_start(now) + timedelta(days=7)
        return RiskDecision.deny(
            LIMIT_WEEKLY_LOSS,
            f"Maximum loss per week limit exceeded. You have lost ${counters.weekly_loss_usd:.2f} "
            f"this week (limit: ${settings.max_loss_per_week_usd:.2f}). "
            f"Limit resets on {next_monday:%Y-%m-%d}.",
            current=counters.weekly_loss_usd,
            limit=settings.max_loss_per_week_usd,
        )

    return RiskDecision.allow(max_position_size=cap)


class FailureCounter:
    """In-memory consecutive-failure counter per (account, exchange)."""

    def __init__(self):
        self._counts: Dict[Tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def increment(self, account_id: str, exchange: str) -> int:
        async with self._lock:
            key = (account_id, exchange)
            self._counts[key] = self._counts.get(key, 0) + 1
            count = self._counts[key]
        logger.info(f"Consecutive failures for {account_id}/{exchange}: {count}")
        return count

    async def reset(self, account_id: str, exchange: str) -> None:
        async with self._lock:
            self._counts.pop((account_id, exchange), None)

    async def get(self, account_id: str, exchange: str) -> int:
        async with self._lock:
            return self._counts.get((account_id, exchange), 0)
