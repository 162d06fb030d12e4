"""
OANDA v20 Client (static bearer token)

Forex adapter. Direction is carried by the sign of `units` (negative = sell),
instruments use the EUR_USD spelling, and closes go through the position
close endpoint so they can never flip the position.
"""

import logging
from typing import Any, Dict, List, Optional

from signal_bridge.exceptions import VenueRejected
from signal_bridge.exchange_clients.base import (
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_FILLED,
    ORDER_STATUS_OPEN,
    ORDER_STATUS_REJECTED,
    order_result,
)
from signal_bridge.exchange_clients.rest_client import RestExchangeClient
from signal_bridge.exchange_clients.symbols import split_symbol

logger = logging.getLogger(__name__)

OANDA_LIVE_URL = "https://api-fxtrade.oanda.com"
OANDA_PRACTICE_URL = "https://api-fxpractice.oanda.com"

_ORDER_STATUS_MAP = {
    "PENDING": ORDER_STATUS_OPEN,
    "FILLED": ORDER_STATUS_FILLED,
    "TRIGGERED": ORDER_STATUS_FILLED,
    "CANCELLED": ORDER_STATUS_CANCELED,
}


def to_oanda_instrument(symbol: str) -> str:
    """EURUSD -> EUR_USD, EUR-USD -> EUR_USD, XAUUSD -> XAU_USD"""
    if "_" in symbol:
        return symbol
    parts = split_symbol(symbol)
    if parts is None:
        # Six-letter pairs with a quote we do not list
        if len(symbol) == 6:
            return f"{symbol[:3]}_{symbol[3:]}"
        return symbol
    base, quote = parts
    return f"{base}_{quote}"


def from_oanda_instrument(instrument: str) -> str:
    return instrument.replace("_", "")


def format_price(instrument: str, price: float) -> str:
    """JPY crosses quote to 3 decimals, everything else to 5."""
    decimals = 3 if instrument.endswith("JPY") else 5
    return f"{float(price):.{decimals}f}"


class OandaClient(RestExchangeClient):
    """OANDA v20 REST adapter."""

    exchange_name = "oanda"
    supports_trailing_stop = True

    def __init__(self, account_id: str, access_token: str, environment: str = "practice", **kwargs):
        is_live = environment.lower() in ("live", "production")
        super().__init__(OANDA_LIVE_URL if is_live else OANDA_PRACTICE_URL, **kwargs)
        self._account_id = account_id
        self._access_token = access_token
        logger.info(f"OandaClient initialized (environment={environment})")

    async def _build_request(self, method, path, params=None, body=None, signed=True):
        kwargs: Dict[str, Any] = {
            "method": method,
            "url": f"{self._base_url}/v3/accounts/{self._account_id}{path}",
            "headers": {
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
                "Accept-Datetime-Format": "RFC3339",
            },
        }
        if params:
            kwargs["params"] = params
        if body is not None:
            kwargs["json"] = body
        return kwargs

    def _extract_error(self, payload, response):
        if isinstance(payload, dict) and payload.get("errorMessage"):
            return payload.get("errorCode"), payload["errorMessage"]
        return super()._extract_error(payload, response)

    def quantity_precision(self, symbol: str) -> Optional[int]:
        # Units are whole numbers
        return 0

    def price_precision(self, symbol: str) -> Optional[int]:
        return 3 if symbol.endswith("JPY") else 5

    # ==========================================================
    # ACCOUNT & BALANCE
    # ==========================================================

    async def _get_summary(self) -> Dict[str, Any]:
        data = await self._request("GET", "/summary")
        return data.get("account") or {}

    async def get_balance(self) -> List[Dict[str, Any]]:
        account = await self._get_summary()
        return [{
            "asset": account.get("currency", "USD"),
            "balance": float(account.get("NAV") or account.get("balance") or 0),
            "available_balance": float(account.get("balance") or 0),
        }]

    async def get_available_margin(self) -> float:
        account = await self._get_summary()
        return float(account.get("marginAvailable") or 0)

    # ==========================================================
    # POSITIONS
    # ==========================================================

    async def get_positions(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/openPositions")
        positions = []
        for raw in data.get("positions") or []:
            long_leg = raw.get("long") or {}
            short_leg = raw.get("short") or {}
            units = float(long_leg.get("units", 0) or 0) + float(short_leg.get("units", 0) or 0)
            if units == 0:
                continue
            leg = long_leg if units > 0 else short_leg
            positions.append({
                "symbol": from_oanda_instrument(raw.get("instrument", "")),
                "side": "BUY" if units > 0 else "SELL",
                "quantity": abs(units),
                "entry_price": float(leg.get("averagePrice", 0) or 0),
                "mark_price": None,
                "unrealized_pnl": float(raw.get("unrealizedPL", 0) or 0),
            })
        return positions

    # ==========================================================
    # MARKET DATA
    # ==========================================================

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        instrument = to_oanda_instrument(symbol)
        data = await self._request("GET", "/pricing", params={"instruments": instrument})
        prices = data.get("prices") or []
        if not prices:
            raise VenueRejected(f"No price data for {symbol}")
        price = prices[0]
        bid = float(price["bids"][0]["price"])
        ask = float(price["asks"][0]["price"])
        return {"symbol": symbol, "price": (bid + ask) / 2}

    # ==========================================================
    # ORDERS
    # ==========================================================

    async def _submit_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        target = order.get("instrument") or f"trade {order.get('tradeID')}"
        logger.info(f"Placing OANDA {order['type']} order: {order.get('units', '')} {target}")
        data = await self._request("POST", "/orders", body={"order": order})

        if data.get("orderCancelTransaction"):
            reason = data["orderCancelTransaction"].get("reason", "UNKNOWN")
            raise VenueRejected(f"OANDA order cancelled: {reason}", venue_code=reason, venue_payload=data)

        if data.get("orderFillTransaction"):
            fill = data["orderFillTransaction"]
            return order_result(fill.get("orderID") or fill.get("id"), ORDER_STATUS_FILLED, data)
        create = data.get("orderCreateTransaction") or {}
        return order_result(create.get("id"), ORDER_STATUS_OPEN, data)

    @staticmethod
    def _units(side: str, quantity: float) -> str:
        units = int(round(abs(quantity)))
        return str(units if side.upper() == "BUY" else -units)

    async def place_market_order(self, symbol, side, quantity):
        return await self._submit_order({
            "type": "MARKET",
            "instrument": to_oanda_instrument(symbol),
            "units": self._units(side, quantity),
            "timeInForce": "FOK",
            "positionFill": "DEFAULT",
        })

    async def place_limit_order(self, symbol, side, quantity, price):
        instrument = to_oanda_instrument(symbol)
        return await self._submit_order({
            "type": "LIMIT",
            "instrument": instrument,
            "units": self._units(side, quantity),
            "price": format_price(instrument, price),
            "timeInForce": "GTC",
            "positionFill": "DEFAULT",
        })

    async def place_stop_loss(self, symbol, side, quantity, stop_price):
        instrument = to_oanda_instrument(symbol)
        return await self._submit_order({
            "type": "STOP",
            "instrument": instrument,
            "units": self._units(side, quantity),
            "price": format_price(instrument, stop_price),
            "timeInForce": "GTC",
            "positionFill": "REDUCE_ONLY",
        })

    async def place_take_profit(self, symbol, side, quantity, price):
        instrument = to_oanda_instrument(symbol)
        return await self._submit_order({
            "type": "LIMIT",
            "instrument": instrument,
            "units": self._units(side, quantity),
            "price": format_price(instrument, price),
            "timeInForce": "GTC",
            "positionFill": "REDUCE_ONLY",
        })

    async def place_trailing_stop(self, symbol, side, quantity, distance=None, callback_rate=None):
        """
        Attach a TRAILING_STOP_LOSS to the newest open trade on the instrument.

        OANDA trails trades, not positions, so the order is bound to the
        trade the entry just created. `side` is the exit side.
        """
        if not distance:
            raise VenueRejected("OANDA trailing stops need a price distance")
        instrument = to_oanda_instrument(symbol)
        data = await self._request("GET", "/openTrades")
        protecting_long = side.upper() == "SELL"
        trades = [
            t for t in data.get("trades") or []
            if t.get("instrument") == instrument
            and (float(t.get("currentUnits", 0) or 0) > 0) == protecting_long
        ]
        if not trades:
            raise VenueRejected(f"No open OANDA trade for {instrument} to trail")
        trade = max(trades, key=lambda t: int(t.get("id") or 0))
        return await self._submit_order({
            "type": "TRAILING_STOP_LOSS",
            "tradeID": str(trade["id"]),
            "distance": format_price(instrument, distance),
            "timeInForce": "GTC",
        })

    async def close_position(self, symbol, side, quantity):
        # A SELL closes the long leg, a BUY closes the short leg
        units = str(int(round(abs(quantity))))
        body = {"longUnits": units} if side.upper() == "SELL" else {"shortUnits": units}
        instrument = to_oanda_instrument(symbol)
        logger.info(f"Closing OANDA position {instrument}: {body}")
        data = await self._request("PUT", f"/positions/{instrument}/close", body=body)
        fill = data.get("longOrderFillTransaction") or data.get("shortOrderFillTransaction") or {}
        return order_result(fill.get("orderID") or fill.get("id"), ORDER_STATUS_FILLED, data)

    async def cancel_order(self, symbol, order_id):
        logger.info(f"Canceling OANDA order {order_id} ({symbol})")
        data = await self._request("PUT", f"/orders/{order_id}/cancel")
        return order_result(order_id, ORDER_STATUS_CANCELED, data)

    def _normalize_order(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        units = float(raw.get("units", 0) or 0)
        state = (raw.get("state") or "").upper()
        return {
            "order_id": str(raw.get("id")),
            "symbol": from_oanda_instrument(raw.get("instrument", "")),
            "side": "BUY" if units > 0 else "SELL",
            "type": raw.get("type"),
            "status": _ORDER_STATUS_MAP.get(state, ORDER_STATUS_REJECTED if state else ""),
            "price": float(raw.get("price", 0) or 0),
            "avg_fill_price": 0.0,
            "quantity": abs(units),
            "filled_quantity": abs(units) if state == "FILLED" else 0.0,
            "created_at": raw.get("createTime"),
        }

    async def get_order(self, symbol, order_id):
        data = await self._request("GET", f"/orders/{order_id}")
        return self._normalize_order(data.get("order") or {})

    async def get_open_orders(self, symbol=None):
        data = await self._request("GET", "/pendingOrders")
        orders = [self._normalize_order(raw) for raw in data.get("orders") or []]
        if symbol:
            orders = [o for o in orders if o["symbol"] == symbol]
        return orders
