"""Ledger configuration."""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration, read from ``LEDGER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "commission-ledger"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"

    # Commission
    max_sale_amount: Decimal = Decimal("1000000")

    # Attribution
    attribution_window_days: int = 30
    self_referral_lookback_days: int = 90
    ip_hash_salt: str = "commission-ledger-default-salt"

    # First referral bonus
    bonus_type: str = "fixed"  # fixed | matched | percentage
    bonus_fixed_amount: Decimal = Decimal("5.00")
    bonus_percentage: Decimal = Decimal("0.50")
    bonus_max_amount: Decimal = Decimal("10.00")
    bonus_min_commission: Decimal = Decimal("1.00")
    bonus_hold_days: int = 30

    # Fraud scoring
    redis_url: str = "redis://localhost:6379/0"
    fraud_cache_ttl_seconds: float = 300.0
    fraud_check_workers: int = 4

    # Leaderboards
    snapshot_ttl_seconds: float = 300.0
    leaderboard_window_days: int = 30
    eager_rank_refresh: bool = False

    # Store access and retries
    store_timeout_seconds: float = 5.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    backlog_workers: int = 4


# Global settings instance
settings = Settings()
