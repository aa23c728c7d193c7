# benefit_booking/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal, Optional, Set

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).resolve().parents[2] / ".env"
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


PROD_ENVIRONMENTS: Set[str] = {"prod", "production", "live"}


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    is_testing: bool = Field(default=False, description="Set by the test suite")

    # Storage
    database_url: str = Field(
        default="sqlite:///./benefit_booking.db",
        description="SQLAlchemy URL for the booking store",
    )
    db_pool_size: int = Field(default=5, ge=1)
    db_max_overflow: int = Field(default=10, ge=0)
    db_pool_timeout_seconds: int = Field(default=5, ge=1)
    db_retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts made by callers of the engine for transient storage failures",
    )

    # Cross-process credit lock (disabled when unset)
    redis_url: Optional[str] = Field(default=None, description="Redis URL for credit locks")
    redis_namespace: str = Field(default="benefit_booking")
    credit_lock_ttl_seconds: int = Field(default=30, ge=1)

    # Booking rules that are not part of per-branch benefit settings
    facility_timezone: str = Field(
        default="UTC",
        description="IANA timezone slot dates and times are expressed in",
    )
    check_in_grace_minutes: int = Field(
        default=15,
        ge=0,
        description="How early before slot start a member may check in",
    )
    no_show_grace_minutes: int = Field(
        default=15,
        ge=0,
        description="How long after slot start a booking may be marked as no-show",
    )
    available_slots_max_days: int = Field(
        default=31,
        ge=1,
        description="Largest date range accepted by the available-slots listing",
    )

    # Background jobs
    celery_broker_url: Optional[str] = Field(default=None)
    no_show_sweep_interval_minutes: int = Field(default=5, ge=1)
    credit_expiry_sweep_hour: int = Field(default=3, ge=0, le=23)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in PROD_ENVIRONMENTS:
                return "production"
            if normalized in {"dev", "local"}:
                return "development"
            return normalized
        return value

    @field_validator("redis_url", "celery_broker_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()
if is_running_tests():
    settings.is_testing = True
