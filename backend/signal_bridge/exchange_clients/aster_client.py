"""
Aster Futures Client (HMAC API keys)

ExchangeClient implementation for the Aster perpetuals DEX using the
Binance-compatible v1/v2 REST API.

- HMAC-SHA256 signature over the alphabetically sorted query string plus
  `timestamp`, sent as `signature` with the `X-MBX-APIKEY` header
- Stop loss = STOP_MARKET, take profit = TAKE_PROFIT_MARKET, both reduceOnly
- Trailing stop = TRAILING_STOP_MARKET with a percent callbackRate
- Symbol mapping: BTCUSDT stays BTCUSDT, BTCUSD -> BTCUSDT
- positionAmt sign carries direction (negative = short)
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from signal_bridge.exceptions import VenueRejected
from signal_bridge.exchange_clients.base import (
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_OPEN,
    ORDER_STATUS_PARTIALLY_FILLED,
    ORDER_STATUS_REJECTED,
    order_result,
)
from signal_bridge.exchange_clients.rest_client import RestExchangeClient
from signal_bridge.exchange_clients.symbols import canonical_symbol, split_symbol

logger = logging.getLogger(__name__)

ASTER_BASE_URL = "https://fapi.asterdex.com"

_QUOTE_MAP = {
    "USD": "USDT",
    "USDT": "USDT",
    "USDC": "USDC",
}

_ORDER_STATUS_MAP = {
    "NEW": ORDER_STATUS_OPEN,
    "PARTIALLY_FILLED": ORDER_STATUS_PARTIALLY_FILLED,
    "FILLED": ORDER_STATUS_FILLED,
    "CANCELED": ORDER_STATUS_CANCELED,
    "REJECTED": ORDER_STATUS_REJECTED,
    "EXPIRED": ORDER_STATUS_EXPIRED,
}


def to_aster_symbol(symbol: str) -> str:
    """Convert a canonical symbol to an Aster contract symbol.

    Examples:
        BTCUSDT -> BTCUSDT
        BTCUSD  -> BTCUSDT
        ETHUSDC -> ETHUSDC
    """
    parts = split_symbol(symbol)
    if parts is None:
        return symbol
    base, quote = parts
    return f"{base}{_QUOTE_MAP.get(quote, quote)}"


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        # Avoid scientific notation for small quantities
        return f"{value:.10f}".rstrip("0").rstrip(".")
    return str(value)


def normalize_order_status(status: Optional[str]) -> str:
    return _ORDER_STATUS_MAP.get((status or "").upper(), (status or "").lower())


class AsterClient(RestExchangeClient):
    """
    Aster perpetuals adapter authenticated with an API key + HMAC secret.

    Endpoints used:
      GET    /fapi/v2/balance        - Wallet balances
      GET    /fapi/v2/positionRisk   - Open positions
      GET    /fapi/v1/ticker/price   - Last price
      POST   /fapi/v1/order          - Place order
      DELETE /fapi/v1/order          - Cancel order
      GET    /fapi/v1/order          - Order status
      GET    /fapi/v1/openOrders     - Resting orders
      POST   /fapi/v1/leverage       - Set leverage
    """

    exchange_name = "aster"
    supports_trailing_stop = True
    _ACCOUNT_PREFIX = "/fapi/v2"
    _TRADE_PREFIX = "/fapi/v1"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = ASTER_BASE_URL,
        **kwargs,
    ):
        super().__init__(base_url, **kwargs)
        self._api_key = api_key
        self._api_secret = api_secret
        logger.info(f"AsterClient initialized (base_url={base_url})")

    # ==========================================================
    # SIGNING
    # ==========================================================

    def sign_query(self, params: Dict[str, Any], timestamp_ms: Optional[int] = None) -> str:
        """Build `sorted-params&timestamp=...&signature=<hmac>`."""
        items = [(k, _format_param(v)) for k, v in sorted(params.items()) if v is not None]
        timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        items.append(("timestamp", str(timestamp_ms)))
        query = urlencode(items)
        signature = hmac.new(
            self._api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return f"{query}&signature={signature}"

    async def _build_request(self, method, path, params=None, body=None, signed=True):
        params = params or {}
        if signed:
            query = self.sign_query(params)
        else:
            query = urlencode([(k, _format_param(v)) for k, v in params.items() if v is not None])
        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{query}"
        return {
            "method": method,
            "url": url,
            "headers": {"X-MBX-APIKEY": self._api_key},
        }

    # ==========================================================
    # ACCOUNT & BALANCE
    # ==========================================================

    async def get_balance(self) -> List[Dict[str, Any]]:
        balances = await self._request("GET", f"{self._ACCOUNT_PREFIX}/balance")
        return [
            {
                "asset": b.get("asset"),
                "balance": float(b.get("balance", 0) or 0),
                "available_balance": float(b.get("availableBalance", 0) or 0),
            }
            for b in balances or []
        ]

    async def get_available_margin(self) -> float:
        for balance in await self.get_balance():
            if balance["asset"] == "USDT":
                return balance["available_balance"]
        return 0.0

    # ==========================================================
    # POSITIONS
    # ==========================================================

    def _normalize_position(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        amount = float(raw.get("positionAmt", 0) or 0)
        return {
            "symbol": raw.get("symbol"),
            "side": "BUY" if amount > 0 else "SELL",
            "quantity": abs(amount),
            "entry_price": float(raw.get("entryPrice", 0) or 0),
            "mark_price": float(raw.get("markPrice", 0) or 0),
            "unrealized_pnl": float(raw.get("unRealizedProfit", 0) or 0),
        }

    async def get_positions(self) -> List[Dict[str, Any]]:
        raw_positions = await self._request("GET", f"{self._ACCOUNT_PREFIX}/positionRisk")
        positions = []
        for raw in raw_positions or []:
            if float(raw.get("positionAmt", 0) or 0) != 0:
                positions.append(self._normalize_position(raw))
        return positions

    async def get_position(self, symbol: str) -> Optional[Dict[str, Any]]:
        target = to_aster_symbol(symbol)
        for position in await self.get_positions():
            if position["symbol"] == target:
                position["symbol"] = symbol
                return position
        return None

    def symbol_key(self, symbol: str) -> str:
        return to_aster_symbol(canonical_symbol(symbol))

    # ==========================================================
    # MARKET DATA
    # ==========================================================

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", f"{self._TRADE_PREFIX}/ticker/price",
            params={"symbol": to_aster_symbol(symbol)}, signed=False,
        )
        return {"symbol": symbol, "price": float(data.get("price", 0) or 0)}

    # ==========================================================
    # ORDERS
    # ==========================================================

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        logger.info(f"Setting Aster leverage for {symbol} to {leverage}x")
        await self._request(
            "POST", f"{self._TRADE_PREFIX}/leverage",
            params={"symbol": to_aster_symbol(symbol), "leverage": int(leverage)},
        )

    async def _place_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Placing Aster order: {order}")
        data = await self._request("POST", f"{self._TRADE_PREFIX}/order", params=order)
        return order_result(data.get("orderId"), normalize_order_status(data.get("status")), data)

    async def place_market_order(self, symbol, side, quantity):
        return await self._place_order({
            "symbol": to_aster_symbol(symbol),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": quantity,
        })

    async def place_limit_order(self, symbol, side, quantity, price):
        return await self._place_order({
            "symbol": to_aster_symbol(symbol),
            "side": side.upper(),
            "type": "LIMIT",
            "quantity": quantity,
            "price": price,
            "timeInForce": "GTC",
        })

    async def place_stop_loss(self, symbol, side, quantity, stop_price):
        return await self._place_order({
            "symbol": to_aster_symbol(symbol),
            "side": side.upper(),
            "type": "STOP_MARKET",
            "stopPrice": stop_price,
            "quantity": quantity,
            "reduceOnly": True,
        })

    async def place_take_profit(self, symbol, side, quantity, price):
        return await self._place_order({
            "symbol": to_aster_symbol(symbol),
            "side": side.upper(),
            "type": "TAKE_PROFIT_MARKET",
            "stopPrice": price,
            "quantity": quantity,
            "reduceOnly": True,
        })

    async def place_trailing_stop(self, symbol, side, quantity, distance=None, callback_rate=None):
        if not callback_rate:
            raise VenueRejected("Aster trailing stops need a callback rate")
        # Venue accepts 0.1% steps
        rate = max(round(float(callback_rate), 1), 0.1)
        return await self._place_order({
            "symbol": to_aster_symbol(symbol),
            "side": side.upper(),
            "type": "TRAILING_STOP_MARKET",
            "callbackRate": rate,
            "quantity": quantity,
            "reduceOnly": True,
        })

    async def close_position(self, symbol, side, quantity):
        return await self._place_order({
            "symbol": to_aster_symbol(symbol),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": quantity,
            "reduceOnly": True,
        })

    async def cancel_order(self, symbol, order_id):
        logger.info(f"Canceling Aster order {order_id} ({symbol})")
        data = await self._request(
            "DELETE", f"{self._TRADE_PREFIX}/order",
            params={"symbol": to_aster_symbol(symbol), "orderId": order_id},
        )
        return order_result(order_id, normalize_order_status(data.get("status")) or ORDER_STATUS_CANCELED, data)

    def _normalize_order(self, raw: Dict[str, Any], symbol: Optional[str] = None) -> Dict[str, Any]:
        return {
            "order_id": str(raw.get("orderId")),
            "symbol": symbol or raw.get("symbol"),
            "side": raw.get("side"),
            "type": raw.get("type"),
            "status": normalize_order_status(raw.get("status")),
            "price": float(raw.get("price", 0) or 0),
            "avg_fill_price": float(raw.get("avgPrice", 0) or 0),
            "quantity": float(raw.get("origQty", 0) or 0),
            "filled_quantity": float(raw.get("executedQty", 0) or 0),
            "reduce_only": bool(raw.get("reduceOnly", False)),
            "created_at": raw.get("time") or raw.get("updateTime"),
        }

    async def get_order(self, symbol, order_id):
        data = await self._request(
            "GET", f"{self._TRADE_PREFIX}/order",
            params={"symbol": to_aster_symbol(symbol), "orderId": order_id},
        )
        return self._normalize_order(data, symbol)

    async def get_open_orders(self, symbol=None):
        params = {"symbol": to_aster_symbol(symbol)} if symbol else {}
        data = await self._request("GET", f"{self._TRADE_PREFIX}/openOrders", params=params)
        return [self._normalize_order(raw) for raw in data or []]
