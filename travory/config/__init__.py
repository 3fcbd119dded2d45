"""Configuration package."""

from travory.config.settings import (
    AppSettings,
    GoogleSheetsSettings,
    ImageSettings,
    ReplicationSettings,
    Settings,
    StoreSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GoogleSheetsSettings",
    "ImageSettings",
    "ReplicationSettings",
    "Settings",
    "StoreSettings",
    "get_settings",
    "validate_all_settings",
]
