"""Configuration package."""

from familysync.config.settings import (
    AppSettings,
    EncryptionSettings,
    GoogleDriveSettings,
    LocalFileSettings,
    Settings,
    SyncTimingSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "EncryptionSettings",
    "GoogleDriveSettings",
    "LocalFileSettings",
    "Settings",
    "SyncTimingSettings",
    "get_settings",
    "validate_all_settings",
]
