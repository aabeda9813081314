"""Configuration package."""

from bookkeeping.config.settings import (
    AppSettings,
    ConfigurationError,
    Settings,
    StoreSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "ConfigurationError",
    "Settings",
    "StoreSettings",
    "get_settings",
    "validate_all_settings",
]
