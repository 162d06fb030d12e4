"""
Generic ccxt Client

Wraps any ccxt.async_support exchange behind the ExchangeClient contract so
venues without a hand-written adapter can be reached as "ccxt:<exchange_id>"
(ccxt:binance, ccxt:bybit, ...).

ccxt exceptions are translated into the signal_bridge error kinds:
    AuthenticationError / PermissionDenied     -> AuthError
    NetworkError family (timeouts, rate limit) -> VenueTransient (retried)
    every other ccxt.BaseError                 -> VenueRejected
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import ccxt.async_support as ccxt_async
from ccxt.base.errors import AuthenticationError, BaseError, NetworkError, PermissionDenied

from signal_bridge.config import settings
from signal_bridge.exceptions import AuthError, VenueRejected, VenueTransient
from signal_bridge.exchange_clients.base import (
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_OPEN,
    ORDER_STATUS_PARTIALLY_FILLED,
    ORDER_STATUS_REJECTED,
    ExchangeClient,
    order_result,
)
from signal_bridge.exchange_clients.retry import call_with_retry
from signal_bridge.exchange_clients.symbols import split_symbol

logger = logging.getLogger(__name__)

_ORDER_STATUS_MAP = {
    "open": ORDER_STATUS_OPEN,
    "closed": ORDER_STATUS_FILLED,
    "canceled": ORDER_STATUS_CANCELED,
    "expired": ORDER_STATUS_EXPIRED,
    "rejected": ORDER_STATUS_REJECTED,
}


def to_ccxt_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC/USDT, BTC-USD -> BTC/USD. Already-unified symbols pass through."""
    if "/" in symbol:
        return symbol
    parts = split_symbol(symbol)
    if parts is None:
        return symbol
    base, quote = parts
    return f"{base}/{quote}"


def from_ccxt_symbol(symbol: str) -> str:
    """BTC/USDT:USDT -> BTCUSDT"""
    return symbol.split(":", 1)[0].replace("/", "")


def normalize_order_status(order: Dict[str, Any]) -> str:
    status = _ORDER_STATUS_MAP.get((order.get("status") or "").lower(), ORDER_STATUS_OPEN)
    if status == ORDER_STATUS_OPEN and float(order.get("filled") or 0) > 0:
        return ORDER_STATUS_PARTIALLY_FILLED
    return status


class CcxtClient(ExchangeClient):
    """Adapter around a ccxt.async_support exchange instance."""

    def __init__(
        self,
        exchange_id: str,
        api_key: str,
        api_secret: str,
        password: Optional[str] = None,
        environment: str = "production",
        options: Optional[Dict[str, Any]] = None,
        exchange: Any = None,
    ):
        self.exchange_id = exchange_id.lower()
        self.exchange_name = f"ccxt:{self.exchange_id}"

        if exchange is None:
            exchange_class = getattr(ccxt_async, self.exchange_id, None)
            if exchange_class is None:
                raise ValueError(f"Unknown ccxt exchange '{self.exchange_id}'")
            config = {
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "timeout": int(settings.venue_request_timeout_seconds * 1000),
                "options": options or {},
            }
            if password:
                config["password"] = password
            exchange = exchange_class(config)
            if environment.lower() in ("sandbox", "testnet", "test", "paper"):
                exchange.set_sandbox_mode(True)

        self._exchange = exchange
        self._markets_loaded = False
        self._semaphore = asyncio.Semaphore(settings.venue_max_concurrency)
        logger.info(f"CcxtClient initialized for {self.exchange_id} (environment={environment})")

    async def close(self):
        await self._exchange.close()

    # ==========================================================
    # CALL PIPELINE
    # ==========================================================

    def _translate_error(self, error: BaseError, description: str) -> Exception:
        text = f"{self.exchange_name} {description}: {error}"
        if isinstance(error, (AuthenticationError, PermissionDenied)):
            return AuthError(text, venue_code=type(error).__name__)
        if isinstance(error, NetworkError):
            return VenueTransient(text, venue_code=type(error).__name__)
        return VenueRejected(text, venue_code=type(error).__name__)

    async def _call(self, method_name: str, *args, **kwargs) -> Any:
        """Invoke a ccxt unified method with error translation and retry."""
        method = getattr(self._exchange, method_name)

        async def attempt():
            try:
                async with self._semaphore:
                    return await method(*args, **kwargs)
            except BaseError as e:
                error = self._translate_error(e, method_name)
                logger.warning(f"{error}")
                raise error

        return await call_with_retry(
            attempt,
            max_retries=settings.venue_max_retries,
            base_delay=settings.venue_retry_delay_seconds,
            description=f"{self.exchange_name} {method_name}",
        )

    async def _ensure_markets(self):
        if not self._markets_loaded:
            await self._call("load_markets")
            self._markets_loaded = True

    async def _market_symbol(self, symbol: str) -> str:
        """Resolve a canonical symbol to the exchange's unified market symbol.

        Perpetual markets (BTC/USDT:USDT) are preferred over spot when both exist.
        """
        await self._ensure_markets()
        unified = to_ccxt_symbol(symbol)
        if ":" in unified or "/" not in unified:
            return unified
        markets = getattr(self._exchange, "markets", None) or {}
        perp = f"{unified}:{unified.split('/', 1)[1]}"
        return perp if perp in markets else unified

    # ==========================================================
    # ACCOUNT & BALANCE
    # ==========================================================

    async def get_balance(self) -> List[Dict[str, Any]]:
        balance = await self._call("fetch_balance")
        totals = balance.get("total") or {}
        free = balance.get("free") or {}
        return [
            {
                "asset": asset,
                "balance": float(amount or 0),
                "available_balance": float(free.get(asset) or 0),
            }
            for asset, amount in totals.items()
            if amount
        ]

    async def get_available_margin(self) -> float:
        balance = await self._call("fetch_balance")
        free = balance.get("free") or {}
        for asset in ("USDT", "USDC", "USD"):
            if free.get(asset):
                return float(free[asset])
        return 0.0

    # ==========================================================
    # POSITIONS
    # ==========================================================

    async def get_positions(self) -> List[Dict[str, Any]]:
        if not self._exchange.has.get("fetchPositions"):
            return []
        raw_positions = await self._call("fetch_positions")
        positions = []
        for raw in raw_positions or []:
            contracts = float(raw.get("contracts") or 0)
            if contracts == 0:
                continue
            positions.append({
                "symbol": from_ccxt_symbol(raw.get("symbol", "")),
                "side": "BUY" if (raw.get("side") or "long") == "long" else "SELL",
                "quantity": abs(contracts),
                "entry_price": float(raw.get("entryPrice") or 0),
                "mark_price": float(raw.get("markPrice") or 0),
                "unrealized_pnl": float(raw.get("unrealizedPnl") or 0),
            })
        return positions

    # ==========================================================
    # MARKET DATA
    # ==========================================================

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        ticker = await self._call("fetch_ticker", await self._market_symbol(symbol))
        price = ticker.get("last") or ticker.get("close")
        if price is None:
            raise VenueRejected(f"No price data for {symbol} on {self.exchange_name}")
        return {"symbol": symbol, "price": float(price)}

    def quantity_precision(self, symbol: str) -> Optional[int]:
        markets = getattr(self._exchange, "markets", None) or {}
        market = markets.get(to_ccxt_symbol(symbol))
        if not market:
            return None
        amount_precision = (market.get("precision") or {}).get("amount")
        # Only integer digit counts are usable here; tick-size precision modes return floats
        if isinstance(amount_precision, int):
            return amount_precision
        return None

    # ==========================================================
    # ORDERS
    # ==========================================================

    async def _create_order(self, symbol, order_type, side, quantity, price=None, params=None):
        market_symbol = await self._market_symbol(symbol)
        logger.info(
            f"Placing {self.exchange_name} {order_type} order: {side} {quantity} {market_symbol}"
        )
        order = await self._call(
            "create_order", market_symbol, order_type, side.lower(), abs(quantity), price, params or {}
        )
        return order_result(order.get("id"), normalize_order_status(order), order)

    async def place_market_order(self, symbol, side, quantity):
        return await self._create_order(symbol, "market", side, quantity)

    async def place_limit_order(self, symbol, side, quantity, price):
        return await self._create_order(symbol, "limit", side, quantity, price)

    async def place_stop_loss(self, symbol, side, quantity, stop_price):
        return await self._create_order(
            symbol, "market", side, quantity,
            params={"stopLossPrice": stop_price, "reduceOnly": True},
        )

    async def place_take_profit(self, symbol, side, quantity, price):
        return await self._create_order(
            symbol, "market", side, quantity,
            params={"takeProfitPrice": price, "reduceOnly": True},
        )

    async def close_position(self, symbol, side, quantity):
        return await self._create_order(
            symbol, "market", side, quantity, params={"reduceOnly": True}
        )

    async def cancel_order(self, symbol, order_id):
        logger.info(f"Canceling {self.exchange_name} order {order_id} ({symbol})")
        data = await self._call("cancel_order", order_id, await self._market_symbol(symbol))
        return order_result(order_id, ORDER_STATUS_CANCELED, data)

    def _normalize_order(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "order_id": str(raw.get("id")),
            "symbol": from_ccxt_symbol(raw.get("symbol") or ""),
            "side": (raw.get("side") or "").upper(),
            "type": raw.get("type"),
            "status": normalize_order_status(raw),
            "price": float(raw.get("price") or raw.get("stopPrice") or 0),
            "avg_fill_price": float(raw.get("average") or 0),
            "quantity": float(raw.get("amount") or 0),
            "filled_quantity": float(raw.get("filled") or 0),
            "reduce_only": bool(raw.get("reduceOnly", False)),
            "created_at": raw.get("timestamp"),
        }

    async def get_order(self, symbol, order_id):
        raw = await self._call("fetch_order", order_id, await self._market_symbol(symbol))
        return self._normalize_order(raw)

    async def get_open_orders(self, symbol=None):
        market_symbol = await self._market_symbol(symbol) if symbol else None
        raw_orders = await self._call("fetch_open_orders", market_symbol)
        return [self._normalize_order(raw) for raw in raw_orders or []]
