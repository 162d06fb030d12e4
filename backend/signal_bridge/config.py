from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./signal_bridge.db"
    database_echo: bool = False

    # Security
    webhook_secret: str = ""  # Shared secret every alert must carry
    encryption_key: str = ""  # Fernet key for stored exchange credentials
    cors_origins: List[str] = ["http://localhost:3000"]

    # Logging
    log_level: str = "INFO"

    # Position sizing defaults (overridable per account/exchange in the DB)
    default_trade_amount: float = 600.0  # Global base position size in USD
    default_leverage: int = 1
    default_quantity_precision: int = 3
    default_price_precision: int = 2

    # Outbound venue calls
    venue_max_retries: int = 3
    venue_retry_delay_seconds: float = 1.0  # Doubles on every retry
    venue_request_timeout_seconds: float = 10.0
    venue_max_concurrency: int = 5  # Concurrent in-flight requests per adapter

    # Order lifecycle
    reversal_delay_seconds: float = 1.0  # Pause between closing and re-opening on reversal

    # Cache TTLs
    risk_cache_ttl_seconds: int = 300
    settings_refresh_seconds: int = 60
    notification_preference_ttl_seconds: int = 300

    # Background monitors
    monitors_enabled: bool = True
    reconciliation_interval_seconds: int = 30
    multi_leg_interval_seconds: int = 15
    pending_order_interval_seconds: int = 30
    orphan_guard_interval_seconds: int = 60

    # Notifications (delivery collaborator)
    notification_webhook_url: str = ""
    notification_queue_size: int = 1000

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Accept lowercase level names from .env"""
        return v.upper() if v else "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
