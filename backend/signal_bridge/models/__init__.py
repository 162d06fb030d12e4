"""
Database models, organized by domain.

All model classes are re-exported here:
    from signal_bridge.models import TradeRecord, OpenPosition, ...
"""

from signal_bridge.database import Base  # noqa: F401, re-exported for tests/conftest.py
from signal_bridge.models.account import (
    ExchangeCredentialRecord, ExchangeSettings, NotificationPreference,
)
from signal_bridge.models.trading import (
    OpenPosition, OptionLegOrder, TradeRecord,
)

__all__ = [
    "Base",
    # Account configuration
    "ExchangeCredentialRecord", "ExchangeSettings", "NotificationPreference",
    # Trading
    "OpenPosition", "OptionLegOrder", "TradeRecord",
]
