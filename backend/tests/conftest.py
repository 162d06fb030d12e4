"""
Shared test fixtures for signal-bridge backend tests.

Provides reusable fixtures for:
- Async database sessions (in-memory SQLite)
- An in-memory exchange client that behaves like a venue
- Settings readers and notifier doubles for the executor and monitors
"""

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from signal_bridge.exchange_clients.base import ExchangeClient, ORDER_STATUS_FILLED, order_result
from signal_bridge.services.settings_service import RiskSettings

# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine():
    """Create an in-memory async SQLite engine for testing."""
    from signal_bridge.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    """Session factory bound to the in-memory engine (what services take)."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


# ---------------------------------------------------------------------------
# Fake venue
# ---------------------------------------------------------------------------


class FakeExchangeClient(ExchangeClient):
    """In-memory venue: market orders fill at `price`, positions net per symbol."""

    exchange_name = "fake"

    def __init__(self, price: float = 50000.0, quantity_decimals: Optional[int] = 3):
        self.price = price
        self.quantity_decimals = quantity_decimals
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.open_orders: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.supports_trailing_stop = True
        self._next_id = 0

    def _order_id(self) -> str:
        self._next_id += 1
        return f"ord-{self._next_id}"

    def _maybe_fail(self, method: str):
        error = self.fail_on.get(method)
        if error is not None:
            raise error

    def open_position(self, symbol: str, side: str, quantity: float, entry_price: Optional[float] = None):
        self.positions[symbol] = {
            "symbol": symbol,
            "side": side,
            "quantity": quantity,
            "entry_price": entry_price or self.price,
            "mark_price": self.price,
            "unrealized_pnl": 0.0,
        }

    async def get_balance(self):
        return [{"asset": "USDT", "balance": 10000.0, "available_balance": 10000.0}]

    async def get_available_margin(self):
        return 10000.0

    async def get_positions(self):
        self._maybe_fail("get_positions")
        return [dict(p, mark_price=self.price) for p in self.positions.values()]

    async def get_ticker(self, symbol):
        return {"symbol": symbol, "price": self.price}

    async def set_leverage(self, symbol, leverage):
        self.calls.append(("set_leverage", symbol, leverage))

    async def place_market_order(self, symbol, side, quantity):
        self.calls.append(("market", symbol, side, quantity))
        self._maybe_fail("place_market_order")
        self.open_position(symbol, side, quantity)
        return order_result(self._order_id(), ORDER_STATUS_FILLED)

    async def place_limit_order(self, symbol, side, quantity, price):
        self.calls.append(("limit", symbol, side, quantity, price))
        self._maybe_fail("place_limit_order")
        self.open_position(symbol, side, quantity, entry_price=price)
        return order_result(self._order_id())

    async def place_stop_loss(self, symbol, side, quantity, stop_price):
        self.calls.append(("stop_loss", symbol, side, quantity, stop_price))
        self._maybe_fail("place_stop_loss")
        return order_result(self._order_id())

    async def place_take_profit(self, symbol, side, quantity, price):
        self.calls.append(("take_profit", symbol, side, quantity, price))
        self._maybe_fail("place_take_profit")
        return order_result(self._order_id())

    async def place_trailing_stop(self, symbol, side, quantity, distance=None, callback_rate=None):
        self.calls.append(("trailing_stop", symbol, side, quantity, distance, callback_rate))
        self._maybe_fail("place_trailing_stop")
        return order_result(self._order_id())

    async def close_position(self, symbol, side, quantity):
        self.calls.append(("close", symbol, side, quantity))
        self._maybe_fail("close_position")
        position = self.positions[symbol]
        remaining = round(position["quantity"] - quantity, 10)
        if remaining <= 0:
            del self.positions[symbol]
        else:
            position["quantity"] = remaining
        return order_result(self._order_id(), ORDER_STATUS_FILLED)

    async def cancel_order(self, symbol, order_id):
        self.calls.append(("cancel", symbol, order_id))
        self._maybe_fail("cancel_order")
        self.open_orders = [o for o in self.open_orders if o["order_id"] != order_id]
        return order_result(order_id, "canceled")

    async def get_order(self, symbol, order_id):
        for order in self.open_orders:
            if order["order_id"] == order_id:
                return order
        return {"order_id": order_id, "symbol": symbol, "status": ORDER_STATUS_FILLED}

    async def get_open_orders(self, symbol=None):
        return [o for o in self.open_orders if symbol is None or o["symbol"] == symbol]

    def quantity_precision(self, symbol):
        return self.quantity_decimals


@pytest.fixture
def fake_client():
    return FakeExchangeClient()


def make_provider(client):
    """client_provider double: returns `client` for every (account, exchange)."""

    async def provider(db, account_id, exchange, environment=None):
        return client

    return provider


# ---------------------------------------------------------------------------
# Settings and notifications
# ---------------------------------------------------------------------------


class StaticSettingsReader:
    """settings_reader double serving fixed RiskSettings snapshots."""

    def __init__(self, *snapshots: RiskSettings):
        self.snapshots = {(s.account_id, s.exchange): s for s in snapshots}

    async def get(self, db, account_id, exchange):
        return self.snapshots.get((account_id, exchange)) or RiskSettings.defaults(account_id, exchange)

    async def list_all(self, db):
        return list(self.snapshots.values())


@pytest.fixture
def notifier():
    """Captures notify() calls without a running dispatcher."""
    mock = MagicMock()
    mock.notify = MagicMock(return_value=True)
    return mock
