"""
Configuration management using Pydantic settings.
Loads environment variables (prefix ``INTL_PAYMENTS_``) and an optional .env file.
"""
from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import FrozenSet, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Amount limits
    max_amount: Decimal = Field(default=Decimal("10000000"), gt=0)
    elevated_amount_threshold: Decimal = Field(default=Decimal("10000"), gt=0)
    high_amount_threshold: Decimal = Field(default=Decimal("50000"), gt=0)
    very_large_amount_threshold: Decimal = Field(default=Decimal("100000"), gt=0)

    # Fraud heuristics
    velocity_window_hours: int = Field(default=24, gt=0)
    velocity_max_payments: int = Field(default=3, ge=0)
    high_risk_countries: str = "KP,IR,SY"

    # Workflow
    settlement_lag_days: int = Field(default=3, ge=0)
    rejection_reason_min_length: int = Field(default=10, ge=1)
    rejection_reason_max_length: int = Field(default=500, ge=1)

    # Persistence
    persistence_timeout_seconds: float = Field(default=5.0, gt=0)

    # Pagination
    default_page_limit: int = Field(default=50, ge=1)
    max_page_limit: int = Field(default=100, ge=1)

    # Reference data (defaults to the YAML bundled with the package)
    reference_data_path: Optional[Path] = None

    model_config = SettingsConfigDict(
        env_prefix="INTL_PAYMENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def high_risk_country_set(self) -> FrozenSet[str]:
        """Convert high-risk countries string to a set of ISO alpha-2 codes."""
        return frozenset(
            code.strip().upper() for code in self.high_risk_countries.split(",") if code.strip()
        )


class SettingsError(RuntimeError):
    """Raised when configuration cannot be loaded."""


_CACHED_SETTINGS: Optional[Settings] = None


def load_settings(force_reload: bool = False) -> Settings:
    """Load application settings and cache the result."""

    global _CACHED_SETTINGS

    if _CACHED_SETTINGS is not None and not force_reload:
        return _CACHED_SETTINGS

    try:
        settings = Settings()
    except ValidationError as exc:
        raise SettingsError(f"Invalid configuration: {exc}") from exc

    _CACHED_SETTINGS = settings
    return settings


__all__ = ["Settings", "SettingsError", "load_settings"]
