"""Configuration settings for the SiteLedger engine.

Values are read from the environment (prefix ``SITELEDGER_``) or a ``.env``
file using Pydantic settings.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="SITELEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Reconciliation
    fully_paid_tolerance: Decimal = Decimal("0.01")
    cost_tolerance: Decimal = Decimal("0.01")
    negative_balance_tolerance: Decimal = Decimal("0")

    # Concurrency: 0 means fail immediately when a scope is busy
    lock_timeout_seconds: float = 0.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Remote mode
    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
