# utils/config.py - Runtime settings
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from LEDGER_* environment variables or .env"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./production_ledger.db"
    sql_echo: bool = False

    # Logging
    log_level: str = "INFO"

    # Write retries on lost races (lock timeouts, deadlocks, serialization failures)
    max_write_retries: int = 5
    retry_backoff_seconds: float = 0.05

    # Stock policy; False makes order start check material availability first
    allow_negative_stock: bool = True

    # Expiry
    near_expiry_days: int = 7

    # Document numbering
    order_number_prefix: str = "OP"
    lot_number_prefix: str = "LOT"

    # Default page size for movement history
    movement_history_limit: int = 100


config = Settings()
