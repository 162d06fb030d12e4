"""
Tests for backend/signal_bridge/services/position_store.py

Tests the keyed in-memory store, its database write-through and
reconciliation against venue positions.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import FakeExchangeClient
from signal_bridge.exchange_clients.ccxt_client import from_ccxt_symbol
from signal_bridge.exchange_clients.symbols import canonical_symbol
from signal_bridge.models import OpenPosition
from signal_bridge.schemas.trade_result import PositionSnapshot
from signal_bridge.services.position_store import PositionStore


def _make_snapshot(**overrides):
    data = {
        "account_id": "acct-1",
        "exchange": "aster",
        "symbol": "BTCUSDT",
        "side": "BUY",
        "entry_price": 50000.0,
        "quantity": 0.01,
        "leverage": 5,
        "position_size_usd": 100.0,
        "opened_at": datetime.now(timezone.utc) - timedelta(minutes=5),
    }
    data.update(overrides)
    return PositionSnapshot(**data)


class TestPositionStoreMemory:
    """Tests for the in-memory map"""

    @pytest.mark.asyncio
    async def test_one_position_per_key(self):
        """Happy path: upserting the same key replaces, never duplicates."""
        store = PositionStore()
        await store.upsert(_make_snapshot())
        await store.upsert(_make_snapshot(side="SELL", quantity=0.02))
        assert store.count_for("acct-1", "aster") == 1
        assert store.get("acct-1", "aster", "BTCUSDT").side == "SELL"

    @pytest.mark.asyncio
    async def test_tracked_accounts_distinct(self):
        store = PositionStore()
        await store.upsert(_make_snapshot())
        await store.upsert(_make_snapshot(symbol="ETHUSDT"))
        await store.upsert(_make_snapshot(exchange="oanda", symbol="EURUSD"))
        assert store.tracked_accounts() == [("acct-1", "aster"), ("acct-1", "oanda")]

    @pytest.mark.asyncio
    async def test_upsert_stamps_opened_at(self):
        """Edge case: missing opened_at is filled in."""
        store = PositionStore()
        position = await store.upsert(_make_snapshot(opened_at=None))
        assert position.opened_at is not None

    @pytest.mark.asyncio
    async def test_update_missing_key_is_noop(self):
        store = PositionStore()
        assert await store.update("acct-1", "aster", "BTCUSDT", quantity=1.0) is None


class TestPositionStorePersistence:
    """Tests for the open_positions write-through"""

    @pytest.mark.asyncio
    async def test_write_through_and_load(self, session_maker, db_session):
        """Happy path: a restarted store sees persisted positions."""
        store = PositionStore(session_maker)
        await store.upsert(_make_snapshot())
        await store.update("acct-1", "aster", "BTCUSDT", quantity=0.005)

        rows = (await db_session.execute(select(OpenPosition))).scalars().all()
        assert len(rows) == 1
        assert rows[0].quantity == 0.005

        restarted = PositionStore(session_maker)
        assert await restarted.load() == 1
        assert restarted.get("acct-1", "aster", "BTCUSDT").quantity == 0.005

    @pytest.mark.asyncio
    async def test_remove_deletes_row(self, session_maker, db_session):
        store = PositionStore(session_maker)
        await store.upsert(_make_snapshot())
        await store.remove("acct-1", "aster", "BTCUSDT")
        rows = (await db_session.execute(select(OpenPosition))).scalars().all()
        assert rows == []


class TestReconcile:
    """Tests for PositionStore.reconcile()"""

    @pytest.mark.asyncio
    async def test_updates_mark_and_unrealized_pnl(self):
        """Happy path: mark price drives unrealized PnL."""
        store = PositionStore()
        await store.upsert(_make_snapshot())
        client = FakeExchangeClient(price=51000.0)
        client.open_position("BTCUSDT", "BUY", 0.01, entry_price=50000.0)

        result = await store.reconcile("acct-1", "aster", client)

        assert result == {"updated": 1, "removed": 0}
        position = store.get("acct-1", "aster", "BTCUSDT")
        assert position.current_price == 51000.0
        assert position.unrealized_pnl_usd == pytest.approx(10.0)
        assert position.unrealized_pnl_percent == pytest.approx(10.0)
        assert position.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_removes_positions_closed_at_venue(self):
        """Happy path: a TP/SL fill or manual close drops the tracked entry."""
        store = PositionStore()
        await store.upsert(_make_snapshot())
        result = await store.reconcile("acct-1", "aster", FakeExchangeClient())
        assert result == {"updated": 0, "removed": 1}
        assert store.get("acct-1", "aster", "BTCUSDT") is None

    @pytest.mark.asyncio
    async def test_dashed_alert_matches_venue_listing(self):
        """Edge case: a COINBASE:BTC-USD position survives a BTC/USD:USD listing."""
        store = PositionStore()
        symbol = canonical_symbol("COINBASE:BTC-USD")
        await store.upsert(_make_snapshot(exchange="ccxt:coinbase", symbol=symbol, stop_loss_order_id="sl-1"))
        client = FakeExchangeClient(price=50500.0)
        client.open_position(from_ccxt_symbol("BTC/USD:USD"), "BUY", 0.01, entry_price=50000.0)

        result = await store.reconcile("acct-1", "ccxt:coinbase", client)

        assert result == {"updated": 1, "removed": 0}
        position = store.get("acct-1", "ccxt:coinbase", symbol)
        assert position.stop_loss_order_id == "sl-1"
        assert position.current_price == 50500.0

    @pytest.mark.asyncio
    async def test_keeps_positions_opened_after_snapshot(self):
        """Edge case: an entry newer than the venue snapshot survives."""
        store = PositionStore()
        await store.upsert(_make_snapshot(opened_at=datetime.now(timezone.utc) + timedelta(seconds=30)))
        result = await store.reconcile("acct-1", "aster", FakeExchangeClient())
        assert result["removed"] == 0
        assert store.get("acct-1", "aster", "BTCUSDT") is not None

    @pytest.mark.asyncio
    async def test_other_accounts_untouched(self):
        store = PositionStore()
        await store.upsert(_make_snapshot(account_id="acct-2"))
        await store.reconcile("acct-1", "aster", FakeExchangeClient())
        assert store.get("acct-2", "aster", "BTCUSDT") is not None
