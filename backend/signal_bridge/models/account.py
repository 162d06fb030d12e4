"""Per-account configuration models: risk settings, credentials, notification preferences."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from signal_bridge.database import Base


class ExchangeSettings(Base):
    """
    Risk and sizing settings for one (account, exchange) pair.

    Numeric caps use 0 for "unlimited". Owned by the settings UI (external);
    the core only reads a snapshot via SettingsService.
    """
    __tablename__ = "exchange_settings"
    __table_args__ = (
        UniqueConstraint("account_id", "exchange", name="uq_exchange_settings_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, nullable=False, index=True)
    exchange = Column(String, nullable=False)

    # Admission control
    kill_switch = Column(Boolean, default=False)
    allow_weekends = Column(Boolean, default=True)
    max_signal_age_sec = Column(Integer, default=10)
    max_daily_loss_usd = Column(Float, default=0.0)
    max_consecutive_failures = Column(Integer, default=0)
    max_concurrent_positions = Column(Integer, default=0)
    max_position_size_usd = Column(Float, default=0.0)
    max_trades_per_week = Column(Integer, default=0)
    max_loss_per_week_usd = Column(Float, default=0.0)

    # Sizing
    trade_amount = Column(Float, nullable=True)  # Venue base amount (falls back to global)
    trade_amount_override = Column(Float, nullable=True)
    position_multiplier = Column(Float, default=1.0)
    leverage = Column(Integer, default=1)
    quantity_precision = Column(Integer, nullable=True)
    default_stop_loss_percent = Column(Float, nullable=True)
    default_take_profit_percent = Column(Float, nullable=True)

    # Trading window
    trading_hours_preset = Column(String, default="24/7")
    trading_window = Column(JSON, default=lambda: ["00:00", "23:59"])
    auto_close_outside_window = Column(Boolean, default=False)

    # Pending / orphan sweeps
    cancel_pending_orders = Column(Boolean, default=False)
    cancel_pending_after = Column(String, default="15m")  # 1m, 5m, 15m, 30m, 1h, before_session
    close_orphaned_positions = Column(Boolean, default=False)
    orphan_grace_minutes = Column(Integer, default=5)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ExchangeCredentialRecord(Base):
    """
    Encrypted venue credentials for an (account, exchange, environment).

    `secrets` holds a JSON object whose values are Fernet tokens, e.g.
    {"api_key": "gAAAA...", "api_secret": "gAAAA..."}.
    """
    __tablename__ = "exchange_credentials"
    __table_args__ = (
        UniqueConstraint("account_id", "exchange", "environment", name="uq_exchange_credential_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, nullable=False, index=True)
    exchange = Column(String, nullable=False)
    environment = Column(String, nullable=False, default="production")  # production, sandbox
    secrets = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class NotificationPreference(Base):
    """Opt-out flags per account and event name. Missing rows mean 'notify'."""
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("account_id", "event", name="uq_notification_preference"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)
    enabled = Column(Boolean, default=True)
