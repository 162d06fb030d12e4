"""
TradeStation Client (OAuth2 bearer with refresh)

ExchangeClient implementation for TradeStation equities/futures via the v3
REST API.

- Access tokens come from a refresh-token exchange against
  signin.tradestation.com and are refreshed 5 minutes before expiry
- Rotating refresh tokens are accepted and handed to an optional callback
  so the credential store can persist the new one
- A 401 on a data call drops the token and retries once after refreshing
- Account ID is auto-detected from /brokerage/accounts when not configured
- Take profit is a plain limit order on the given side; stop loss is StopMarket
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from signal_bridge.exceptions import AuthError, VenueRejected, VenueTransient
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

TRADESTATION_TOKEN_URL = "https://signin.tradestation.com/oauth/token"
TRADESTATION_LIVE_URL = "https://api.tradestation.com/v3"
TRADESTATION_SIM_URL = "https://sim-api.tradestation.com/v3"

_DEFAULT_TOKEN_TTL = 1200  # seconds, when expires_in is missing
_REFRESH_THRESHOLD = 5 * 60  # refresh when within 5 minutes of expiry

_SIM_ENVIRONMENTS = {"sim", "paper", "sandbox", "test"}

_ORDER_STATUS_MAP = {
    "ACK": ORDER_STATUS_OPEN,
    "OPN": ORDER_STATUS_OPEN,
    "DON": ORDER_STATUS_OPEN,
    "RCV": ORDER_STATUS_OPEN,
    "FLP": ORDER_STATUS_PARTIALLY_FILLED,
    "FPR": ORDER_STATUS_PARTIALLY_FILLED,
    "FLL": ORDER_STATUS_FILLED,
    "CAN": ORDER_STATUS_CANCELED,
    "OUT": ORDER_STATUS_CANCELED,
    "UCN": ORDER_STATUS_CANCELED,
    "REJ": ORDER_STATUS_REJECTED,
    "EXP": ORDER_STATUS_EXPIRED,
}


def to_tradestation_symbol(symbol: str) -> str:
    """Equity and futures roots pass through; dashed crypto pairs are joined.

    AAPL -> AAPL, BTC-USD -> BTCUSD
    """
    return symbol.replace("-", "")


def normalize_order_status(status: Optional[str]) -> str:
    return _ORDER_STATUS_MAP.get((status or "").upper(), (status or "").lower())


class TradeStationClient(RestExchangeClient):
    """TradeStation v3 adapter with OAuth refresh-token authentication."""

    exchange_name = "tradestation"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        account_id: Optional[str] = None,
        environment: str = "production",
        on_refresh_token_rotated: Optional[Callable[[str], Awaitable[None]]] = None,
        **kwargs,
    ):
        is_sim = environment.lower() in _SIM_ENVIRONMENTS
        super().__init__(TRADESTATION_SIM_URL if is_sim else TRADESTATION_LIVE_URL, **kwargs)
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._account_id = account_id
        self._environment = environment
        self._on_refresh_token_rotated = on_refresh_token_rotated
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()
        logger.info(f"TradeStationClient initialized (environment={environment})")

    # ==========================================================
    # TOKEN MANAGEMENT
    # ==========================================================

    def _token_is_fresh(self) -> bool:
        return bool(self._access_token) and time.monotonic() < self._token_expires_at - _REFRESH_THRESHOLD

    async def refresh_access_token(self) -> str:
        """Exchange the refresh token for a new access token.

        Raises:
            AuthError: refresh token expired, revoked or client credentials wrong
            VenueTransient: token endpoint unreachable or 5xx
        """
        try:
            resp = await self._client.post(
                TRADESTATION_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException:
            raise VenueTransient("TradeStation token refresh timed out")
        except httpx.TransportError as e:
            raise VenueTransient(f"TradeStation token endpoint unavailable: {e}")

        if resp.status_code in (400, 401, 403):
            logger.error(f"TradeStation token refresh rejected ({resp.status_code})")
            raise AuthError(
                "TradeStation refresh token expired or invalid. Please re-authorize your account."
            )
        if resp.status_code >= 400:
            raise self._translate_error(resp)

        data = resp.json()
        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in") or _DEFAULT_TOKEN_TTL)
        self._token_expires_at = time.monotonic() + expires_in

        new_refresh = data.get("refresh_token")
        if new_refresh and new_refresh != self._refresh_token:
            self._refresh_token = new_refresh
            logger.info("TradeStation refresh token rotated")
            if self._on_refresh_token_rotated:
                try:
                    await self._on_refresh_token_rotated(new_refresh)
                except Exception as e:
                    logger.error(f"Failed to persist rotated TradeStation refresh token: {e}")

        logger.info(f"TradeStation access token refreshed (expires in {expires_in}s)")
        return self._access_token

    async def _ensure_token(self) -> str:
        async with self._token_lock:
            if not self._token_is_fresh():
                await self.refresh_access_token()
            return self._access_token

    async def _on_auth_error(self) -> bool:
        self._access_token = None
        self._token_expires_at = 0.0
        return True

    async def _build_request(self, method, path, params=None, body=None, signed=True):
        token = await self._ensure_token()
        kwargs: Dict[str, Any] = {
            "method": method,
            "url": f"{self._base_url}{path}",
            "headers": {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
        }
        if params:
            kwargs["params"] = params
        if body is not None:
            kwargs["json"] = body
        return kwargs

    def _extract_error(self, payload, response):
        if isinstance(payload, dict):
            message = payload.get("Message") or payload.get("Error") or payload.get("message")
            if message:
                return payload.get("Error"), str(message)
        return super()._extract_error(payload, response)

    async def get_account_id(self) -> str:
        if self._account_id:
            return self._account_id
        data = await self._request("GET", "/brokerage/accounts")
        accounts = data.get("Accounts") or []
        if not accounts:
            raise VenueRejected("No TradeStation accounts found")
        self._account_id = accounts[0]["AccountID"]
        logger.info(f"Auto-detected TradeStation account {self._account_id}")
        return self._account_id

    # ==========================================================
    # ACCOUNT & BALANCE
    # ==========================================================

    async def _get_balances(self) -> Dict[str, Any]:
        account_id = await self.get_account_id()
        data = await self._request("GET", f"/brokerage/accounts/{account_id}/balances")
        balances = data.get("Balances") or []
        return balances[0] if balances else {}

    async def get_balance(self) -> List[Dict[str, Any]]:
        balance = await self._get_balances()
        return [{
            "asset": "USD",
            "balance": float(balance.get("Equity", 0) or 0),
            "available_balance": float(balance.get("CashBalance", 0) or 0),
        }]

    async def get_available_margin(self) -> float:
        balance = await self._get_balances()
        return float(
            balance.get("DayTradingBuyingPower")
            or balance.get("BuyingPower")
            or balance.get("CashBalance")
            or 0
        )

    # ==========================================================
    # POSITIONS
    # ==========================================================

    def _normalize_position(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        qty = float(raw.get("Quantity", 0) or 0)
        long_short = (raw.get("LongShort") or "").lower()
        is_long = long_short == "long" if long_short else qty > 0
        return {
            "symbol": raw.get("Symbol"),
            "side": "BUY" if is_long else "SELL",
            "quantity": abs(qty),
            "entry_price": float(raw.get("AveragePrice", 0) or 0),
            "mark_price": float(raw.get("Last", 0) or 0),
            "unrealized_pnl": float(raw.get("UnrealizedProfitLoss", 0) or 0),
        }

    async def get_positions(self) -> List[Dict[str, Any]]:
        account_id = await self.get_account_id()
        data = await self._request("GET", f"/brokerage/accounts/{account_id}/positions")
        return [
            self._normalize_position(raw)
            for raw in data.get("Positions") or []
            if float(raw.get("Quantity", 0) or 0) != 0
        ]

    async def get_position(self, symbol: str) -> Optional[Dict[str, Any]]:
        target = to_tradestation_symbol(symbol)
        for position in await self.get_positions():
            if position["symbol"] == target:
                position["symbol"] = symbol
                return position
        return None

    # ==========================================================
    # MARKET DATA
    # ==========================================================

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/marketdata/quotes/{to_tradestation_symbol(symbol)}")
        quotes = data.get("Quotes") or []
        if not quotes:
            raise VenueRejected(f"Symbol {symbol} not found on TradeStation")
        quote = quotes[0]
        return {"symbol": symbol, "price": float(quote.get("Last") or quote.get("Close") or 0)}

    # ==========================================================
    # ORDERS
    # ==========================================================

    async def _place_order(self, order_type: str, symbol: str, side: str, quantity: float, **prices) -> Dict[str, Any]:
        account_id = await self.get_account_id()
        confirm_id = uuid.uuid4().hex[:22]
        request = {
            "AccountID": account_id,
            "Symbol": to_tradestation_symbol(symbol),
            "Quantity": str(abs(quantity)),
            "OrderType": order_type,
            "TradeAction": side.upper(),
            "TimeInForce": {"Duration": "GTC" if order_type != "Market" else "DAY"},
            "Route": "Intelligent",
            "OrderConfirmID": confirm_id,
        }
        for key, value in prices.items():
            request[key] = f"{float(value):.2f}"

        logger.info(f"Placing TradeStation {order_type} order: {side} {quantity} {symbol}")
        data = await self._request("POST", "/orderexecution/orders", body=request)
        orders = data.get("Orders") or []
        if not orders or not orders[0].get("OrderID"):
            errors = data.get("Errors") or []
            message = errors[0].get("Message") if errors else "No order returned"
            raise VenueRejected(f"TradeStation order placement failed: {message}", venue_payload=data)
        return order_result(orders[0]["OrderID"], ORDER_STATUS_OPEN, orders[0])

    async def place_market_order(self, symbol, side, quantity):
        return await self._place_order("Market", symbol, side, quantity)

    async def place_limit_order(self, symbol, side, quantity, price):
        return await self._place_order("Limit", symbol, side, quantity, LimitPrice=price)

    async def place_stop_loss(self, symbol, side, quantity, stop_price):
        return await self._place_order("StopMarket", symbol, side, quantity, StopPrice=stop_price)

    async def place_take_profit(self, symbol, side, quantity, price):
        return await self._place_order("Limit", symbol, side, quantity, LimitPrice=price)

    async def close_position(self, symbol, side, quantity):
        position = await self.get_position(symbol)
        if position is None:
            raise VenueRejected(f"No TradeStation position found for {symbol}")
        close_qty = min(abs(quantity), position["quantity"])
        return await self._place_order("Market", symbol, side, close_qty)

    async def cancel_order(self, symbol, order_id):
        clean_id = str(order_id).replace("-", "")
        logger.info(f"Canceling TradeStation order {clean_id} ({symbol})")
        await self._request("DELETE", f"/orderexecution/orders/{clean_id}")
        return order_result(clean_id, ORDER_STATUS_CANCELED)

    def _normalize_order(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        legs = raw.get("Legs") or [{}]
        leg = legs[0]
        return {
            "order_id": str(raw.get("OrderID")),
            "symbol": leg.get("Symbol") or raw.get("Symbol"),
            "side": (leg.get("BuyOrSell") or "").upper() or None,
            "type": raw.get("OrderType"),
            "status": normalize_order_status(raw.get("Status")),
            "price": float(raw.get("LimitPrice") or raw.get("StopPrice") or 0),
            "avg_fill_price": float(raw.get("FilledPrice") or leg.get("ExecutionPrice") or 0),
            "quantity": float(leg.get("QuantityOrdered") or 0),
            "filled_quantity": float(leg.get("ExecQuantity") or 0),
            "created_at": raw.get("OpenedDateTime"),
        }

    async def get_order(self, symbol, order_id):
        account_id = await self.get_account_id()
        clean_id = str(order_id).replace("-", "")
        data = await self._request("GET", f"/brokerage/accounts/{account_id}/orders/{clean_id}")
        orders = data.get("Orders") or []
        if not orders:
            return {"order_id": clean_id, "symbol": symbol, "status": ORDER_STATUS_OPEN}
        return self._normalize_order(orders[0])

    async def get_open_orders(self, symbol=None):
        account_id = await self.get_account_id()
        data = await self._request("GET", f"/brokerage/accounts/{account_id}/orders")
        orders = [self._normalize_order(raw) for raw in data.get("Orders") or []]
        open_orders = [
            o for o in orders
            if o["status"] in (ORDER_STATUS_OPEN, ORDER_STATUS_PARTIALLY_FILLED)
        ]
        if symbol:
            target = to_tradestation_symbol(symbol)
            open_orders = [o for o in open_orders if o["symbol"] == target]
        return open_orders
