"""Credit engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables with CREDITS_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="CREDITS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.credit_engine/ledger.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Ledger
    minimum_reserve: Decimal = Decimal("0.5")
    ledger_max_write_attempts: int = 5
    tier_monthly_credits: dict[str, int] = {"FREE": 0, "PRO": 400, "ENTERPRISE": 0}

    # Auto-replenishment
    max_consecutive_failures: int = 3
    default_threshold_credits: int = 100
    default_top_up_credits: int = 400
    default_max_monthly_top_ups: int = 5
    min_top_up_credits: int = 100
    cents_per_credit: int = 1
    currency: str = "usd"

    # Stripe
    stripe_secret_key: SecretStr = SecretStr("")
    meter_event_name: str = "shipper_cloud_credits"
    meter_queue_max_size: int = 1000
    external_call_timeout_seconds: float = 10.0

    # Scheduling
    sync_interval_seconds: float = 3600.0
    replenish_interval_seconds: float = 300.0

    # Logging
    structured_logging: bool = False
    log_level: str = "INFO"

    @field_validator("stripe_secret_key", mode="before")
    @classmethod
    def mask_key_in_repr(cls, v: str | SecretStr | None) -> SecretStr:
        if v is None:
            return SecretStr("")
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @field_validator("minimum_reserve")
    @classmethod
    def reserve_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("minimum_reserve must not be negative")
        return v

    @field_validator(
        "sync_interval_seconds",
        "replenish_interval_seconds",
        "external_call_timeout_seconds",
        "ledger_max_write_attempts",
        "meter_queue_max_size",
    )
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    def is_stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key.get_secret_value())

    def monthly_credits_for(self, tier: str) -> int:
        """Credits granted per month for a membership tier (0 when unknown)."""
        return self.tier_monthly_credits.get(tier.upper(), 0)


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
