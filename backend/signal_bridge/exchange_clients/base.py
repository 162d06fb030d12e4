"""
ExchangeClient Abstract Base Class

This module defines the capability contract every venue adapter implements
(crypto-derivatives DEXes, forex brokers, equities/options brokers and
generic ccxt exchanges). The TradeExecutor and the monitors only ever talk
to this interface.

Contract guarantees:
- Symbols passed in are canonical; adapters translate them to the venue-native
  token before every call
- `side` is always the side of the order being placed (BUY/SELL), never an
  inferred close side
- Absence (no position, no ticker match) is a value (None / []), not an error
- Failures surface only as the error kinds in signal_bridge.exceptions
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from signal_bridge.exceptions import VenueRejected
from signal_bridge.exchange_clients.symbols import canonical_symbol

# Normalized order statuses shared by all adapters
ORDER_STATUS_OPEN = "open"
ORDER_STATUS_FILLED = "filled"
ORDER_STATUS_PARTIALLY_FILLED = "partially_filled"
ORDER_STATUS_CANCELED = "canceled"
ORDER_STATUS_REJECTED = "rejected"
ORDER_STATUS_EXPIRED = "expired"


def order_result(order_id: Any, status: str = ORDER_STATUS_OPEN, raw: Any = None) -> Dict[str, Any]:
    """Build the normalized order reference returned by place/cancel calls."""
    return {
        "order_id": str(order_id) if order_id is not None else None,
        "status": status,
        "raw": raw,
    }


def opposite_side(side: str) -> str:
    """BUY <-> SELL"""
    side = side.upper()
    if side == "BUY":
        return "SELL"
    if side == "SELL":
        return "BUY"
    raise ValueError(f"Invalid side '{side}'. Must be BUY or SELL")


class ExchangeClient(ABC):
    """
    Abstract base class for all venue adapters.

    Design Philosophy:
    - Methods return standardized dicts with consistent keys
    - Prices and quantities are floats; quantities are unsigned, direction
      lives in `side`
    - Order IDs are venue-specific strings
    - Everything is async; each call carries its own timeout and retry budget
    """

    exchange_name: str = "unknown"
    supports_trailing_stop: bool = False

    # ========================================
    # ACCOUNT & BALANCE METHODS
    # ========================================

    @abstractmethod
    async def get_balance(self) -> List[Dict[str, Any]]:
        """
        Get account balances.

        Returns:
            [{"asset": "USDT", "balance": 1000.0, "available_balance": 950.0}]
        """
        pass

    @abstractmethod
    async def get_available_margin(self) -> float:
        """Funds available for new positions (buying power / free margin)."""
        pass

    # ========================================
    # POSITION METHODS
    # ========================================

    @abstractmethod
    async def get_positions(self) -> List[Dict[str, Any]]:
        """
        Get all open positions (zero-size entries filtered out).

        Returns:
            [
                {
                    "symbol": "BTCUSDT",        # canonical
                    "side": "BUY",              # BUY = long, SELL = short
                    "quantity": 0.01,           # unsigned
                    "entry_price": 50000.0,
                    "mark_price": 50100.0,
                    "unrealized_pnl": 1.0,
                }
            ]
        """
        pass

    async def get_position(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Get the open position for one symbol, or None."""
        for position in await self.get_positions():
            if position["symbol"] == symbol and position["quantity"] > 0:
                return position
        return None

    async def has_open_position(self, symbol: str) -> bool:
        return await self.get_position(symbol) is not None

    # ========================================
    # MARKET DATA METHODS
    # ========================================

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        """
        Get the last traded price.

        Returns:
            {"symbol": "BTCUSDT", "price": 50000.0}
        """
        pass

    # ========================================
    # ORDER EXECUTION METHODS
    # ========================================

    @abstractmethod
    async def place_market_order(self, symbol: str, side: str, quantity: float) -> Dict[str, Any]:
        """
        Place a market order.

        Returns:
            {"order_id": "123", "status": "filled", "raw": {...}}
        """
        pass

    @abstractmethod
    async def place_limit_order(
        self, symbol: str, side: str, quantity: float, price: float
    ) -> Dict[str, Any]:
        """Place a good-till-cancel limit order."""
        pass

    @abstractmethod
    async def place_stop_loss(
        self, symbol: str, side: str, quantity: float, stop_price: float
    ) -> Dict[str, Any]:
        """Place a reduce-only stop order that triggers at stop_price."""
        pass

    @abstractmethod
    async def place_take_profit(
        self, symbol: str, side: str, quantity: float, price: float
    ) -> Dict[str, Any]:
        """Place a reduce-only take-profit order at price."""
        pass

    @abstractmethod
    async def close_position(self, symbol: str, side: str, quantity: float) -> Dict[str, Any]:
        """
        Close (part of) a position with a reduce-only market order.

        Args:
            side: Side of the closing order (SELL closes a long, BUY closes a short)
        """
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        """
        Get order status.

        Returns:
            {"order_id", "symbol", "side", "type", "status", "price",
             "avg_fill_price", "quantity", "filled_quantity", "created_at"}
        """
        pass

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        """List resting (unfilled) orders, same shape as get_order()."""
        pass

    async def place_trailing_stop(
        self,
        symbol: str,
        side: str,
        quantity: float,
        distance: Optional[float] = None,
        callback_rate: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Place a reduce-only trailing stop.

        Args:
            distance: Trail distance in price units
            callback_rate: Trail distance as a percent of price (1 = 1%)

        Only venues with supports_trailing_stop implement this.
        """
        raise VenueRejected(f"{self.exchange_name} does not support trailing stops")

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """Set leverage where the venue supports it. Default: no-op."""
        return None

    async def close(self):
        """Release network resources."""
        return None

    # ========================================
    # METADATA
    # ========================================

    def quantity_precision(self, symbol: str) -> Optional[int]:
        """Venue quantity precision for symbol, or None to use settings."""
        return None

    def price_precision(self, symbol: str) -> Optional[int]:
        """Venue price precision for symbol, or None to use settings."""
        return None

    def symbol_key(self, symbol: str) -> str:
        """Key that matches a tracked symbol against this venue's listings."""
        return canonical_symbol(symbol)
