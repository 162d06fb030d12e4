"""Outcome schemas returned by the TradeExecutor and the webhook endpoint"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class PositionSnapshot(BaseModel):
    account_id: str
    exchange: str
    symbol: str
    side: str  # BUY (long) or SELL (short)
    entry_price: float
    quantity: float
    leverage: int = 1
    position_size_usd: Optional[float] = None
    entry_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    current_price: Optional[float] = None
    unrealized_pnl_usd: Optional[float] = None
    unrealized_pnl_percent: Optional[float] = None
    unprotected_sides: List[str] = []
    opened_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class CloseSummary(BaseModel):
    symbol: str
    side: str
    entry_price: float
    exit_price: float
    quantity: float
    pnl_usd: float
    pnl_percent: float
    exit_reason: str
    partial: bool = False
    order_id: Optional[str] = None


class TradeResult(BaseModel):
    success: bool
    action: str  # opened, closed, reversed, skipped, reversal_failed, no_position
    message: str = ""
    position: Optional[PositionSnapshot] = None
    close_summary: Optional[CloseSummary] = None
    warnings: List[str] = []
