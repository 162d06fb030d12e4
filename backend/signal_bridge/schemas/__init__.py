"""Centralized Pydantic schemas for the webhook API and executor results"""

from .credentials import ExchangeCredential
from .trade_intent import TradeAction, TradeIntent, WebhookAlert, build_trade_intent
from .trade_result import CloseSummary, PositionSnapshot, TradeResult

__all__ = [
    # Venue access
    "ExchangeCredential",
    # Inbound
    "TradeAction",
    "TradeIntent",
    "WebhookAlert",
    "build_trade_intent",
    # Outbound
    "CloseSummary",
    "PositionSnapshot",
    "TradeResult",
]
