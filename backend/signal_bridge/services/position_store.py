"""
Position Store

Authoritative in-memory view of open positions keyed by
(account_id, exchange, symbol), with an optional write-through mirror in the
open_positions table so a restart can rehydrate it.

Rules:
- At most one position per key (upsert replaces, never appends)
- Every mutation touches exactly one key; last writer wins
- Persistence failures are logged and never propagate to the caller
- reconcile() converges the store to what the venue reports
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import delete, select

from signal_bridge.exchange_clients.base import ExchangeClient
from signal_bridge.models import OpenPosition
from signal_bridge.schemas.trade_result import PositionSnapshot
from signal_bridge.services.trade_calculations import calculate_pnl, calculate_pnl_percent

logger = logging.getLogger(__name__)


class PositionKey(NamedTuple):
    account_id: str
    exchange: str
    symbol: str


def key_for(position: PositionSnapshot) -> PositionKey:
    return PositionKey(position.account_id, position.exchange, position.symbol)


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class PositionStore:
    """In-memory position map with optional database write-through."""

    def __init__(self, session_maker=None):
        self._positions: Dict[PositionKey, PositionSnapshot] = {}
        self._session_maker = session_maker

    # ==========================================================
    # QUERIES
    # ==========================================================

    def get(self, account_id: str, exchange: str, symbol: str) -> Optional[PositionSnapshot]:
        return self._positions.get(PositionKey(account_id, exchange, symbol))

    def list_all(self) -> List[PositionSnapshot]:
        return list(self._positions.values())

    def list_for(self, account_id: str, exchange: str) -> List[PositionSnapshot]:
        return [
            p for key, p in self._positions.items()
            if key.account_id == account_id and key.exchange == exchange
        ]

    def count_for(self, account_id: str, exchange: str) -> int:
        return len(self.list_for(account_id, exchange))

    def tracked_accounts(self) -> List[tuple]:
        """Distinct (account_id, exchange) pairs with at least one position."""
        return sorted({(key.account_id, key.exchange) for key in self._positions})

    # ==========================================================
    # MUTATIONS
    # ==========================================================

    async def upsert(self, position: PositionSnapshot) -> PositionSnapshot:
        """Insert or replace the position for its key."""
        if position.opened_at is None:
            position = position.model_copy(update={"opened_at": datetime.now(timezone.utc)})
        self._positions[key_for(position)] = position
        logger.info(
            f"Position tracked: {position.account_id}/{position.exchange} {position.symbol} "
            f"{position.side} qty={position.quantity} @ {position.entry_price}"
        )
        await self._persist_upsert(position)
        return position

    async def update(self, account_id: str, exchange: str, symbol: str, **changes) -> Optional[PositionSnapshot]:
        """Apply field changes to an existing position (no-op when absent)."""
        key = PositionKey(account_id, exchange, symbol)
        current = self._positions.get(key)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        self._positions[key] = updated
        await self._persist_upsert(updated)
        return updated

    async def remove(self, account_id: str, exchange: str, symbol: str) -> Optional[PositionSnapshot]:
        key = PositionKey(account_id, exchange, symbol)
        position = self._positions.pop(key, None)
        if position is not None:
            logger.info(f"Position removed: {account_id}/{exchange} {symbol}")
            await self._persist_remove(key)
        return position

    def clear(self):
        self._positions.clear()

    # ==========================================================
    # RECONCILIATION
    # ==========================================================

    async def reconcile(self, account_id: str, exchange: str, client: ExchangeClient) -> Dict[str, int]:
        """
        Converge tracked positions for (account, exchange) with the venue.

        - Matching positions get quantity, mark, unrealized PnL, last_synced_at
        - Tracked positions the venue no longer reports are removed
          (manual close / TP / SL fill), unless they were opened after the
          venue snapshot was requested

        Returns:
            {"updated": n, "removed": n}
        """
        snapshot_started = datetime.now(timezone.utc)
        venue_positions = await client.get_positions()
        by_symbol: Dict[str, Dict[str, Any]] = {
            client.symbol_key(p["symbol"]): p for p in venue_positions if p.get("quantity")
        }

        updated = removed = 0
        for position in self.list_for(account_id, exchange):
            venue = by_symbol.get(client.symbol_key(position.symbol))
            if venue is None:
                opened_at = position.opened_at
                if opened_at is not None and opened_at.tzinfo is None:
                    opened_at = opened_at.replace(tzinfo=timezone.utc)
                if opened_at is not None and opened_at >= snapshot_started:
                    continue
                logger.info(
                    f"Position {account_id}/{exchange} {position.symbol} no longer on venue, removing"
                )
                await self.remove(account_id, exchange, position.symbol)
                removed += 1
                continue

            quantity = float(venue.get("quantity") or position.quantity)
            mark = venue.get("mark_price") or None
            changes: Dict[str, Any] = {
                "quantity": quantity,
                "last_synced_at": datetime.now(timezone.utc),
            }
            if mark:
                pnl = calculate_pnl(position.side, position.entry_price, float(mark), quantity)
                changes.update({
                    "current_price": float(mark),
                    "unrealized_pnl_usd": round(pnl, 4),
                    "unrealized_pnl_percent": round(
                        calculate_pnl_percent(pnl, position.position_size_usd), 4
                    ),
                })
            elif venue.get("unrealized_pnl") is not None:
                pnl = float(venue["unrealized_pnl"])
                changes.update({
                    "unrealized_pnl_usd": round(pnl, 4),
                    "unrealized_pnl_percent": round(
                        calculate_pnl_percent(pnl, position.position_size_usd), 4
                    ),
                })
            await self.update(account_id, exchange, position.symbol, **changes)
            updated += 1

        return {"updated": updated, "removed": removed}

    # ==========================================================
    # PERSISTENCE
    # ==========================================================

    async def load(self) -> int:
        """Rehydrate the in-memory map from open_positions (startup)."""
        if self._session_maker is None:
            return 0
        async with self._session_maker() as db:
            result = await db.execute(select(OpenPosition))
            rows = result.scalars().all()
        for row in rows:
            position = PositionSnapshot(
                account_id=row.account_id,
                exchange=row.exchange,
                symbol=row.symbol,
                side=row.side,
                entry_price=row.entry_price,
                quantity=row.quantity,
                leverage=row.leverage or 1,
                position_size_usd=row.position_size_usd,
                entry_order_id=row.entry_order_id,
                stop_loss_order_id=row.stop_loss_order_id,
                take_profit_order_id=row.take_profit_order_id,
                stop_loss_price=row.stop_loss_price,
                take_profit_price=row.take_profit_price,
                current_price=row.current_price,
                unrealized_pnl_usd=row.unrealized_pnl_usd,
                unrealized_pnl_percent=row.unrealized_pnl_percent,
                opened_at=row.opened_at.replace(tzinfo=timezone.utc) if row.opened_at else None,
                last_synced_at=row.last_synced_at,
            )
            self._positions[key_for(position)] = position
        logger.info(f"Loaded {len(rows)} open position(s) from database")
        return len(rows)

    async def _persist_upsert(self, position: PositionSnapshot):
        if self._session_maker is None:
            return
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(OpenPosition).where(
                        OpenPosition.account_id == position.account_id,
                        OpenPosition.exchange == position.exchange,
                        OpenPosition.symbol == position.symbol,
                    )
                )
                row = result.scalars().first()
                if row is None:
                    row = OpenPosition(
                        account_id=position.account_id,
                        exchange=position.exchange,
                        symbol=position.symbol,
                    )
                    db.add(row)
                row.side = position.side
                row.entry_price = position.entry_price
                row.quantity = position.quantity
                row.leverage = position.leverage
                row.position_size_usd = position.position_size_usd
                row.entry_order_id = position.entry_order_id
                row.stop_loss_order_id = position.stop_loss_order_id
                row.take_profit_order_id = position.take_profit_order_id
                row.stop_loss_price = position.stop_loss_price
                row.take_profit_price = position.take_profit_price
                row.current_price = position.current_price
                row.unrealized_pnl_usd = position.unrealized_pnl_usd
                row.unrealized_pnl_percent = position.unrealized_pnl_percent
                row.opened_at = _naive(position.opened_at)
                row.last_synced_at = _naive(position.last_synced_at)
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to persist position {position.symbol}: {e}")

    async def _persist_remove(self, key: PositionKey):
        if self._session_maker is None:
            return
        try:
            async with self._session_maker() as db:
                await db.execute(
                    delete(OpenPosition).where(
                        OpenPosition.account_id == key.account_id,
                        OpenPosition.exchange == key.exchange,
                        OpenPosition.symbol == key.symbol,
                    )
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to delete persisted position {key.symbol}: {e}")
