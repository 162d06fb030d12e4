"""Trading models: closed-trade ledger, open positions, option combo trades."""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from signal_bridge.database import Base


class TradeRecord(Base):
    """
    Immutable ledger of closed trades.

    Rows are appended when a position is closed (signal, reversal, TP/SL fill,
    auto-close) and never updated afterwards. Risk counters (daily loss,
    weekly trade count, weekly loss) are derived from this table.
    """
    __tablename__ = "trade_records"
    __table_args__ = (
        Index("ix_trade_records_account_exchange_time", "account_id", "exchange", "exit_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, nullable=False)
    exchange = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)  # BUY (long) or SELL (short)
    asset_class = Column(String, default="crypto")  # crypto, forex, equity, options

    entry_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    position_size_usd = Column(Float, nullable=True)
    entry_time = Column(DateTime, nullable=True)
    exit_time = Column(DateTime, default=datetime.utcnow, nullable=False)

    stop_loss_price = Column(Float, nullable=True)
    take_profit_price = Column(Float, nullable=True)

    pnl_usd = Column(Float, nullable=False, default=0.0)
    pnl_percent = Column(Float, nullable=False, default=0.0)
    exit_reason = Column(String, nullable=False)  # SIGNAL, REVERSAL, TAKE_PROFIT, STOP_LOSS, AUTO_CLOSE, ...
    notes = Column(Text, nullable=True)


class OpenPosition(Base):
    """
    Persisted mirror of the in-memory position store.

    At most one row per (account, exchange, symbol); the unique constraint
    enforces the no-pyramiding invariant at the storage layer as well.
    """
    __tablename__ = "open_positions"
    __table_args__ = (
        UniqueConstraint("account_id", "exchange", "symbol", name="uq_open_position_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, nullable=False)
    exchange = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    entry_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    leverage = Column(Integer, default=1)
    position_size_usd = Column(Float, nullable=True)

    entry_order_id = Column(String, nullable=True)
    stop_loss_order_id = Column(String, nullable=True)
    take_profit_order_id = Column(String, nullable=True)
    stop_loss_price = Column(Float, nullable=True)
    take_profit_price = Column(Float, nullable=True)

    current_price = Column(Float, nullable=True)
    unrealized_pnl_usd = Column(Float, nullable=True)
    unrealized_pnl_percent = Column(Float, nullable=True)

    opened_at = Column(DateTime, default=datetime.utcnow)
    last_synced_at = Column(DateTime, nullable=True)


class OptionLegOrder(Base):
    """
    One broker-side combo trade (entry + take-profit leg + stop-loss leg).

    status: pending_entry -> open -> closed_tp | closed_sl | closed | cancelled
    Leg snapshots are stored as the broker returned them.
    """
    __tablename__ = "option_leg_orders"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, nullable=False, index=True)
    exchange = Column(String, nullable=False, default="tradier_options")
    underlying_symbol = Column(String, nullable=False)
    option_symbol = Column(String, nullable=False)

    status = Column(String, nullable=False, default="pending_entry", index=True)
    quantity_contracts = Column(Integer, nullable=False, default=1)
    contract_size = Column(Integer, nullable=False, default=100)
    cost_usd = Column(Float, nullable=True)

    entry_order_id = Column(String, nullable=False)
    entry_order = Column(JSON, nullable=True)
    tp_leg = Column(JSON, nullable=True)
    sl_leg = Column(JSON, nullable=True)
    auto_close_order = Column(JSON, nullable=True)
    auto_close_order_id = Column(String, nullable=True)

    tp_limit_price = Column(Float, nullable=True)
    sl_stop_price = Column(Float, nullable=True)
    exit_strategy = Column(String, nullable=True)  # time_1h, time_2h, eod
    scheduled_exit_time = Column(DateTime, nullable=True)

    pnl_usd = Column(Float, nullable=True)
    pnl_percent = Column(Float, nullable=True)
    exit_reason = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)
