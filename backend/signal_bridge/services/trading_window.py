"""
Trading window helpers

Pure functions (no DB, no network) shared by the risk engine, the multi-leg
monitor and the pending-order monitor.

Presets:
    24/7, 24/5, forex-hours, weekend   -> 00:00-23:59 (UTC)
    ny-session, market-hours           -> 09:30-16:00 America/New_York
    london-session                     -> 08:00-14:00 Europe/London
    custom                             -> configured [start, end] in New York time
    anything else                      -> 09:30-16:00 America/New_York

Windows whose start is after their end wrap past midnight (22:00-02:00).
"""

from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

ALL_DAY = ("00:00", "23:59")
NY_SESSION = ("09:30", "16:00")
LONDON_SESSION = ("08:00", "14:00")

NEW_YORK = "America/New_York"
LONDON = "Europe/London"
UTC = "UTC"

_PRESET_WINDOWS = {
    "24/7": (ALL_DAY, UTC),
    "24/5": (ALL_DAY, UTC),
    "forex-hours": (ALL_DAY, UTC),
    "weekend": (ALL_DAY, UTC),
    "ny-session": (NY_SESSION, NEW_YORK),
    "market-hours": (NY_SESSION, NEW_YORK),
    "london-session": (LONDON_SESSION, LONDON),
}


def parse_time_to_minutes(value: str) -> int:
    """'09:30' -> 570. Missing parts count as 0."""
    parts = f"{value}".split(":")
    try:
        hour = int(parts[0]) if parts[0] else 0
        minute = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    except ValueError:
        return 0
    return hour * 60 + minute


def resolve_window(
    preset: Optional[str], custom_window: Optional[Sequence[str]] = None
) -> Tuple[Tuple[str, str], str]:
    """Return ((start, end), timezone name) for a preset."""
    preset = (preset or "").lower()
    if preset in _PRESET_WINDOWS:
        return _PRESET_WINDOWS[preset]
    if preset == "custom":
        if custom_window and len(custom_window) == 2 and custom_window[0] and custom_window[1]:
            return (str(custom_window[0]), str(custom_window[1])), NEW_YORK
        return ALL_DAY, NEW_YORK
    return NY_SESSION, NEW_YORK


def is_all_day(preset: Optional[str], custom_window: Optional[Sequence[str]] = None) -> bool:
    window, _ = resolve_window(preset, custom_window)
    return window == ALL_DAY


def minutes_in_zone(now: datetime, tz_name: str) -> int:
    """Minutes since local midnight in tz_name. Naive datetimes are treated as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz_name))
    return local.hour * 60 + local.minute


def is_within_window(minutes_now: int, start: int, end: int) -> bool:
    if start <= end:
        return start <= minutes_now <= end
    # Wraps past midnight
    return minutes_now >= start or minutes_now <= end


def is_within_trading_window(
    preset: Optional[str],
    custom_window: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Whether `now` (default: current UTC time) falls inside the preset window."""
    now = now or datetime.now(timezone.utc)
    (start, end), tz_name = resolve_window(preset, custom_window)
    return is_within_window(
        minutes_in_zone(now, tz_name),
        parse_time_to_minutes(start),
        parse_time_to_minutes(end),
    )


def session_end_minutes(
    preset: Optional[str], custom_window: Optional[Sequence[str]] = None
) -> Tuple[int, str]:
    """(end-of-session minutes, timezone name) for the preset."""
    (_, end), tz_name = resolve_window(preset, custom_window)
    return parse_time_to_minutes(end), tz_name


def is_weekend(now: Optional[datetime] = None) -> bool:
    """Saturday or Sunday in UTC."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).weekday() >= 5
