"""
Configuration Management for Bookkeeping

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what the engine depends on and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Record store (database) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BOOKKEEPING_DB_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///bookkeeping.db",
        description="SQLAlchemy database URL for the record store"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    connect_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts made when the database cannot be reached"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for local structured logs"
    )

    # Invoice codes: INV-JUAL-AB-010224/001
    invoice_code_prefix: str = Field(
        default="INV",
        min_length=1,
        max_length=10,
    )
    sales_code_segment: str = Field(
        default="JUAL",
        min_length=1,
        max_length=10,
        description="Code segment for sales invoices"
    )
    purchase_code_segment: str = Field(
        default="BELI",
        min_length=1,
        max_length=10,
        description="Code segment for purchase invoices"
    )

    # Sanity bound for record amounts (minor currency units)
    max_amount: int = Field(
        default=10**15,
        gt=0,
        description="Largest amount accepted for an invoice or payment"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


class ConfigurationError(ValueError):
    """One or more settings sections failed to load."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__(
            "Invalid settings: " + ", ".join(sorted(errors))
        )


def validate_all_settings() -> dict[str, Optional[str]]:
    """
    Load every settings section once.

    Returns {section: error message, or None when it loads}.
    Useful for startup checks.
    """
    settings = get_settings()
    loaders = {
        "store": lambda: settings.store,
        "app": lambda: settings.app,
    }

    results: dict[str, Optional[str]] = {}
    for section, load in loaders.items():
        try:
            load()
            results[section] = None
        except ValidationError as e:
            results[section] = str(e)
    return results
