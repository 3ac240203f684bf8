# backend/coachline/core/config.py
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")

    # Storage
    database_url: str = Field(
        default="sqlite:///./coachline.db", description="SQLAlchemy database URL"
    )
    redis_url: str = Field(
        default="redis://localhost:6379", description="Redis URL for locks and the Celery broker"
    )

    # Stripe Configuration
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret for the Stripe webhook endpoint",
    )
    stripe_currency: str = Field(default="usd", description="Default currency for payments")

    # Money
    platform_fee_percentage: int = Field(
        default=20, description="Platform fee percentage (20 = 20%)"
    )
    minimum_platform_fee_cents: int = Field(
        default=50, description="Floor applied to the platform fee of any paid transaction"
    )
    payout_minimum_cents: int = Field(
        default=2500, description="Pending balance a coach needs before a weekly transfer"
    )

    # Cancellation policy defaults (a booking may carry its own override)
    full_refund_hours: int = Field(default=24, ge=0)
    partial_refund_hours: int = Field(default=2, ge=0)
    partial_refund_percent: int = Field(default=50, ge=0, le=100)

    # Booking
    free_intro_window_days: int = Field(
        default=30, description="Rolling window for the one-free-intro-per-coach limit"
    )
    default_time_zone: str = Field(default="America/New_York")
    slot_lock_ttl_seconds: int = Field(default=30, ge=1)
    slot_lock_wait_seconds: float = Field(default=5.0, ge=0)

    # Integrations
    calcom_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Scheduling provider API key (empty disables mirroring)",
    )
    calcom_api_url: str = Field(default="https://api.cal.com/v2")
    calendar_sync_url: str = Field(
        default="", description="Calendar sync endpoint (empty disables sync)"
    )

    # Operational endpoints
    cron_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token the scheduler sends to the payout cron endpoint",
    )
    admin_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Shared key for admin endpoints (X-Admin-Key header)",
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> str:
        return str(value or "usd").strip().lower()

    @model_validator(mode="after")
    def _validate_refund_bands(self) -> "Settings":
        if self.partial_refund_hours > self.full_refund_hours:
            raise ValueError("partial_refund_hours must not exceed full_refund_hours")
        return self

    @property
    def calcom_configured(self) -> bool:
        return bool(self.calcom_api_key.get_secret_value())


settings = Settings()
