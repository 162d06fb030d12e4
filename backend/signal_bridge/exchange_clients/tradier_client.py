"""
Tradier Clients (static bearer token)

TradierClient covers equities/ETFs; TradierOptionsClient adds option quotes,
OCC symbol construction and the OTOCO combo orders (entry + take-profit +
stop-loss) watched by the multi-leg monitor.

Tradier quirks handled here:
- POST bodies are form-encoded, not JSON
- Collections collapse to a single object when there is one element
  ({"position": {...}} vs {"position": [...]}) and to the string "null"
  when empty
- Order sides are lowercase (buy, sell, buy_to_open, sell_to_close)
- Order tags may only hold letters, digits and dashes
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

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

logger = logging.getLogger(__name__)

TRADIER_LIVE_URL = "https://api.tradier.com/v1"
TRADIER_SANDBOX_URL = "https://sandbox.tradier.com/v1"

_ORDER_STATUS_MAP = {
    "open": ORDER_STATUS_OPEN,
    "pending": ORDER_STATUS_OPEN,
    "partially_filled": ORDER_STATUS_PARTIALLY_FILLED,
    "filled": ORDER_STATUS_FILLED,
    "canceled": ORDER_STATUS_CANCELED,
    "expired": ORDER_STATUS_EXPIRED,
    "rejected": ORDER_STATUS_REJECTED,
    "error": ORDER_STATUS_REJECTED,
}


def as_list(value: Any) -> List[Any]:
    """Tradier returns one element as a dict, many as a list, none as 'null'."""
    if not value or value == "null":
        return []
    return value if isinstance(value, list) else [value]


def _collection(data: Any, outer: str, inner: str) -> List[Any]:
    container = data.get(outer) if isinstance(data, dict) else None
    if not isinstance(container, dict):
        return []
    return as_list(container.get(inner))


def to_occ_option_symbol(
    underlying: str, expiration: Union[str, date, datetime], right: str, strike: float
) -> str:
    """Build an OCC option symbol.

    Examples:
        ("SPY", "2025-01-17", "call", 475) -> SPY250117C00475000
        ("AAPL", date(2024, 6, 21), "P", 182.5) -> AAPL240621P00182500
    """
    if isinstance(expiration, str):
        try:
            expiration = datetime.strptime(expiration[:10], "%Y-%m-%d").date()
        except ValueError:
            raise ValueError(f"Invalid expiration date: {expiration}")
    elif isinstance(expiration, datetime):
        expiration = expiration.date()
    strike_part = str(int(round(float(strike) * 1000))).zfill(8)
    return f"{underlying.upper()}{expiration:%y%m%d}{right[0].upper()}{strike_part}"


def normalize_order_status(status: Optional[str]) -> str:
    return _ORDER_STATUS_MAP.get((status or "").lower(), (status or "").lower())


class TradierClient(RestExchangeClient):
    """Tradier brokerage adapter for equities."""

    exchange_name = "tradier"

    def __init__(self, account_id: str, access_token: str, environment: str = "sandbox", **kwargs):
        is_live = environment.lower() in ("live", "production")
        super().__init__(TRADIER_LIVE_URL if is_live else TRADIER_SANDBOX_URL, **kwargs)
        self._account_id = account_id
        self._access_token = access_token
        self._environment = environment
        logger.info(f"{self.__class__.__name__} initialized (environment={environment})")

    async def _build_request(self, method, path, params=None, body=None, signed=True):
        kwargs: Dict[str, Any] = {
            "method": method,
            "url": f"{self._base_url}{path}",
            "headers": {
                "Authorization": f"Bearer {self._access_token}",
                "Accept": "application/json",
            },
        }
        if method in ("POST", "PUT") and params:
            kwargs["data"] = {k: str(v) for k, v in params.items() if v is not None}
        elif params:
            kwargs["params"] = params
        return kwargs

    def _extract_error(self, payload, response):
        if isinstance(payload, dict) and isinstance(payload.get("errors"), dict):
            errors = as_list(payload["errors"].get("error"))
            if errors:
                return None, "; ".join(str(e) for e in errors)
        if isinstance(payload, dict) and payload.get("fault"):
            return None, str(payload["fault"].get("faultstring", payload["fault"]))
        return super()._extract_error(payload, response)

    # ==========================================================
    # ACCOUNT & BALANCE
    # ==========================================================

    async def _get_balances(self) -> Dict[str, Any]:
        data = await self._request("GET", f"/accounts/{self._account_id}/balances")
        return data.get("balances") or {}

    async def get_balance(self) -> List[Dict[str, Any]]:
        balances = await self._get_balances()
        return [{
            "asset": "USD",
            "balance": float(balances.get("total_equity", 0) or 0),
            "available_balance": float(
                balances.get("cash_available") or balances.get("total_cash") or 0
            ),
        }]

    async def get_available_margin(self) -> float:
        balances = await self._get_balances()
        return float(
            balances.get("option_buying_power")
            or balances.get("stock_buying_power")
            or balances.get("cash_available")
            or 0
        )

    # ==========================================================
    # POSITIONS
    # ==========================================================

    async def get_positions(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/accounts/{self._account_id}/positions")
        positions = []
        for raw in _collection(data, "positions", "position"):
            qty = float(raw.get("quantity", 0) or 0)
            if qty == 0:
                continue
            cost_basis = float(raw.get("cost_basis", 0) or 0)
            entry_price = abs(cost_basis / qty)
            positions.append({
                "symbol": raw.get("symbol"),
                "side": "BUY" if qty > 0 else "SELL",
                "quantity": abs(qty),
                "entry_price": entry_price,
                "mark_price": None,
                "unrealized_pnl": 0.0,
            })
        return positions

    # ==========================================================
    # MARKET DATA
    # ==========================================================

    async def get_quotes(self, symbols: List[str]) -> List[Dict[str, Any]]:
        if not symbols:
            raise ValueError("Symbols list cannot be empty for get_quotes")
        data = await self._request(
            "GET", "/markets/quotes", params={"symbols": ",".join(symbols), "greeks": "false"}
        )
        quotes = _collection(data, "quotes", "quote")
        if not quotes:
            raise VenueRejected(f"No quote data returned for {', '.join(symbols)}")
        return quotes

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        quote = (await self.get_quotes([symbol]))[0]
        return {"symbol": symbol, "price": float(quote.get("last") or 0)}

    # ==========================================================
    # ORDERS
    # ==========================================================

    async def _submit_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Placing Tradier {params.get('class')} {params.get('type')} order: "
                    f"{params.get('side')} {params.get('quantity')} {params.get('symbol')}")
        data = await self._request("POST", f"/accounts/{self._account_id}/orders", params=params)
        order = data.get("order") or {}
        if not order.get("id"):
            raise VenueRejected("Tradier order placement returned no order id", venue_payload=data)
        return order

    async def _place_equity_order(self, symbol, side, quantity, order_type, duration, **extra):
        order = await self._submit_order({
            "class": "equity",
            "symbol": symbol,
            "side": side.lower(),
            "quantity": str(abs(quantity)),
            "type": order_type,
            "duration": duration,
            **extra,
        })
        return order_result(order["id"], normalize_order_status(order.get("status")) or ORDER_STATUS_OPEN, order)

    async def place_market_order(self, symbol, side, quantity):
        return await self._place_equity_order(symbol, side, quantity, "market", "day")

    async def place_limit_order(self, symbol, side, quantity, price):
        return await self._place_equity_order(symbol, side, quantity, "limit", "gtc", price=price)

    async def place_stop_loss(self, symbol, side, quantity, stop_price):
        return await self._place_equity_order(symbol, side, quantity, "stop", "gtc", stop=stop_price)

    async def place_take_profit(self, symbol, side, quantity, price):
        return await self._place_equity_order(symbol, side, quantity, "limit", "gtc", price=price)

    async def close_position(self, symbol, side, quantity):
        return await self._place_equity_order(symbol, side, quantity, "market", "day")

    async def cancel_order(self, symbol, order_id):
        logger.info(f"Canceling Tradier order {order_id} ({symbol})")
        await self._request("DELETE", f"/accounts/{self._account_id}/orders/{order_id}")
        return order_result(order_id, ORDER_STATUS_CANCELED)

    def _normalize_order(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "order_id": str(raw.get("id")),
            "symbol": raw.get("symbol"),
            "option_symbol": raw.get("option_symbol"),
            "side": (raw.get("side") or "").lower(),
            "type": (raw.get("type") or "").lower(),
            "status": normalize_order_status(raw.get("status")),
            "price": float(raw.get("price") or raw.get("stop_price") or 0),
            "avg_fill_price": float(raw.get("avg_fill_price") or 0),
            "quantity": float(raw.get("quantity") or 0),
            "filled_quantity": float(raw.get("exec_quantity") or 0),
            "created_at": raw.get("create_date"),
            "transaction_date": raw.get("transaction_date"),
        }

    async def _get_raw_order(self, order_id: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", f"/accounts/{self._account_id}/orders/{order_id}", params={"includeTags": "true"}
        )
        return data.get("order") or {}

    async def get_order(self, symbol, order_id):
        return self._normalize_order(await self._get_raw_order(order_id))

    async def get_open_orders(self, symbol=None):
        data = await self._request("GET", f"/accounts/{self._account_id}/orders")
        raw_orders = _collection(data, "orders", "order")
        orders = [self._normalize_order(raw) for raw in raw_orders]
        open_orders = [
            o for o in orders
            if o["status"] in (ORDER_STATUS_OPEN, ORDER_STATUS_PARTIALLY_FILLED)
        ]
        if symbol:
            open_orders = [o for o in open_orders if o["symbol"] == symbol]
        return open_orders


class TradierOptionsClient(TradierClient):
    """Tradier adapter for single-leg options traded as OTOCO combos."""

    exchange_name = "tradier_options"

    async def get_option_expirations(self, symbol: str) -> List[str]:
        data = await self._request(
            "GET", "/markets/options/expirations",
            params={"symbol": symbol, "includeAllRoots": "true"},
        )
        return _collection(data, "expirations", "date")

    async def get_option_chain(self, symbol: str, expiration: str) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET", "/markets/options/chains",
            params={"symbol": symbol, "expiration": expiration, "greeks": "false"},
        )
        return _collection(data, "options", "option")

    async def create_otoco_order(
        self, legs: List[Dict[str, Any]], duration: str = "day", tag: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Submit a one-triggers-one-cancels-other combo.

        Each leg: {underlying_symbol, option_symbol, quantity, side, type,
        price?, stop?}. Typically leg 0 is the buy_to_open entry, leg 1 the
        sell_to_close limit (take profit) and leg 2 the sell_to_close stop.

        Returns:
            {"id": ..., "status": ...} as returned by Tradier
        """
        if not legs:
            raise ValueError("OTOCO order requires at least one leg")

        params: Dict[str, Any] = {"class": "otoco", "duration": duration}
        if tag:
            params["tag"] = tag.replace("_", "-")
        for index, leg in enumerate(legs):
            params[f"symbol[{index}]"] = leg["underlying_symbol"]
            params[f"quantity[{index}]"] = str(leg["quantity"])
            params[f"type[{index}]"] = leg["type"]
            params[f"side[{index}]"] = leg["side"]
            params[f"option_symbol[{index}]"] = leg["option_symbol"]
            if leg.get("price") is not None:
                params[f"price[{index}]"] = str(leg["price"])
            if leg.get("stop") is not None:
                params[f"stop[{index}]"] = str(leg["stop"])

        logger.info(f"Placing Tradier OTOCO order with {len(legs)} legs ({legs[0]['option_symbol']})")
        return await self._submit_order(params)

    async def create_option_market_order(
        self,
        underlying_symbol: str,
        option_symbol: str,
        quantity: int,
        side: str,
        duration: str = "day",
        tag: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "class": "option",
            "side": side,
            "type": "market",
            "duration": duration,
            "quantity": str(quantity),
            "symbol": underlying_symbol,
            "option_symbol": option_symbol,
        }
        if tag:
            params["tag"] = tag.replace("_", "-")
        return await self._submit_order(params)

    async def get_order_legs(self, order_id: str) -> Dict[str, Any]:
        """
        Fetch an order and its legs, normalized.

        A plain (non-combo) order is reported as its own single leg.

        Returns:
            {"order_id", "status", "legs": [normalized order, ...]}
        """
        raw = await self._get_raw_order(order_id)
        legs = as_list(raw.get("leg")) or ([raw] if raw else [])
        return {
            "order_id": str(raw.get("id", order_id)),
            "status": normalize_order_status(raw.get("status")),
            "legs": [self._normalize_order(leg) for leg in legs],
        }
