"""
Trade Calculation Helpers

Pure functions for position sizing, protective price levels and realized /
unrealized PnL. No imports from models/services/database.
Easy to unit test in isolation.

Percentages for stop loss / take profit are margin-relative: a 20% stop at
5x leverage is a 4% price move.
"""

import math
from typing import Optional, Tuple

from signal_bridge.exceptions import ValidationError


def resolve_trade_amount(
    global_base: float,
    explicit_size: Optional[float] = None,
    venue_override: Optional[float] = None,
    venue_amount: Optional[float] = None,
    position_multiplier: Optional[float] = None,
) -> float:
    """
    Pick the margin amount (USD) for an entry.

    Priority:
        1. explicit position_size_usd on the alert
        2. venue trade_amount_override
        3. venue trade_amount x position_multiplier
        4. global base amount (x position_multiplier)

    Pure: the same inputs always produce the same amount.
    """
    if explicit_size:
        return float(explicit_size)
    if venue_override:
        return float(venue_override)
    multiplier = position_multiplier if position_multiplier else 1.0
    if venue_amount:
        return float(venue_amount) * multiplier
    return float(global_base) * multiplier


def apply_position_cap(amount: float, max_position_size: Optional[float]) -> float:
    """Clamp amount to the cap; 0/None means no cap."""
    if max_position_size and amount > max_position_size:
        return float(max_position_size)
    return amount


def calculate_quantity(amount: float, leverage: int, price: float) -> float:
    """quantity = amount x leverage / price"""
    if not amount or amount <= 0 or not price or price <= 0:
        raise ValidationError("Invalid parameters for position size calculation")
    leverage = leverage or 1
    return amount * leverage / price


def round_quantity(quantity: float, decimals: int = 3) -> float:
    return round(quantity, decimals)


def round_price(price: float, decimals: int = 2) -> float:
    return round(price, decimals)


def partial_close_quantity(full_quantity: float, sell_percentage: Optional[float], decimals: int = 3) -> float:
    """
    Quantity to close for a sell_percentage in [0.1, 100].

    Rounded down to the venue precision, never below one minimum unit and
    never above the open quantity. Out-of-range percentages close everything.
    """
    if not sell_percentage or sell_percentage >= 100 or sell_percentage < 0.1:
        return full_quantity
    step = 10 ** -decimals
    quantity = math.floor(full_quantity * sell_percentage / 100 / step + 1e-9) * step
    quantity = round(max(quantity, step), decimals)
    return min(quantity, full_quantity)


def _price_move_pct(percent: float, leverage: int) -> float:
    return percent / (leverage or 1)


def calculate_stop_loss(side: str, entry_price: float, stop_loss_percent: float, leverage: int = 1) -> float:
    """
    Stop price for a position.

    Long:  entry x (1 - move/100)
    Short: entry x (1 + move/100)
    where move = stop_loss_percent / leverage
    """
    if not entry_price or entry_price <= 0:
        raise ValidationError("Invalid entry price for stop loss calculation")
    if not stop_loss_percent or stop_loss_percent <= 0:
        raise ValidationError("Stop loss percent must be positive")
    move = _price_move_pct(stop_loss_percent, leverage)
    side = side.upper()
    if side == "BUY":
        return entry_price * (1 - move / 100)
    if side == "SELL":
        return entry_price * (1 + move / 100)
    raise ValidationError(f"Invalid side '{side}'. Must be BUY or SELL")


def calculate_take_profit(
    side: str, entry_price: float, take_profit_percent: float, leverage: int = 1
) -> float:
    """Target price for a position; mirror image of calculate_stop_loss."""
    if not entry_price or entry_price <= 0:
        raise ValidationError("Invalid entry price for take profit calculation")
    if not take_profit_percent or take_profit_percent <= 0:
        raise ValidationError("Take profit percent must be positive")
    move = _price_move_pct(take_profit_percent, leverage)
    side = side.upper()
    if side == "BUY":
        return entry_price * (1 + move / 100)
    if side == "SELL":
        return entry_price * (1 - move / 100)
    raise ValidationError(f"Invalid side '{side}'. Must be BUY or SELL")


def calculate_pnl(side: str, entry_price: float, exit_price: float, quantity: float) -> float:
    """Long: (exit - entry) x qty. Short: (entry - exit) x qty."""
    if side.upper() == "BUY":
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity


def calculate_pnl_percent(pnl: float, amount: Optional[float]) -> float:
    """PnL relative to the margin amount committed."""
    if not amount:
        return 0.0
    return pnl / amount * 100


def calculate_option_pnl(
    entry_price: float, exit_price: float, contracts: int, contract_size: int = 100
) -> Tuple[float, float]:
    """(pnl_usd, pnl_percent) for a long option position."""
    pnl = (exit_price - entry_price) * contract_size * contracts
    pnl_percent = 0.0 if entry_price == 0 else (exit_price - entry_price) / entry_price * 100
    return pnl, pnl_percent
