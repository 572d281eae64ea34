"""
Configuration Management for familysync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
The sync timings (debounce, poll interval, WAL staleness window, highlight
duration) are product-tunable, so they live in settings rather than as
constants scattered through the sync modules.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncTimingSettings(BaseSettings):
    """Timing knobs for the sync orchestrator and its helpers."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    debounce_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Quiet period before a burst of local changes is saved"
    )
    poll_interval_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="How often the remote file's last-modified time is checked"
    )
    highlight_duration_seconds: float = Field(
        default=3.0,
        ge=0.0,
        description="How long new/modified records stay highlighted after a sync"
    )
    wal_max_age_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Settings WAL entries older than this are discarded"
    )
    tombstone_retention_days: Optional[int] = Field(
        default=None,
        ge=1,
        description="Prune tombstones older than this many days (None = keep forever)"
    )


class EncryptionSettings(BaseSettings):
    """Sync file encryption parameters."""

    model_config = SettingsConfigDict(
        env_prefix="ENCRYPTION_",
        extra="ignore"
    )

    pbkdf2_iterations: int = Field(
        default=100_000,
        ge=1_000,
        description="PBKDF2-HMAC-SHA256 iterations for password-derived keys"
    )


class LocalFileSettings(BaseSettings):
    """Local filesystem sync target configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOCAL_SYNC_",
        extra="ignore"
    )

    file_path: str = Field(
        ...,
        description="Path to the shared .beanpod sync file"
    )
    wal_directory: str = Field(
        default=".familysync/wal",
        description="Directory holding the settings write-ahead log"
    )

    @field_validator('file_path')
    @classmethod
    def validate_file_path(cls, v: str) -> str:
        """Warn if the parent directory doesn't exist (it may be a mount that appears later)."""
        if not Path(v).expanduser().parent.exists():
            import warnings
            warnings.warn(
                f"Sync file directory not found for {v}. "
                "Make sure it exists before syncing."
            )
        return v


class GoogleDriveSettings(BaseSettings):
    """Google Drive sync target configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_DRIVE_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    file_id: Optional[str] = Field(
        default=None,
        description="Drive file id of an existing sync file"
    )
    file_name: str = Field(
        default="family.beanpod",
        description="Name used when the sync file has to be created"
    )
    folder_name: str = Field(
        default="familysync",
        description="App folder the sync file lives in"
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

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for local structured logs"
    )
    audit_buffer_size: int = Field(
        default=500,
        ge=10,
        le=10_000,
        description="How many audit events the in-memory audit store keeps"
    )


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

    # Sub-settings are loaded lazily so a device with only a local file
    # configured never needs Drive credentials.

    @property
    def timing(self) -> SyncTimingSettings:
        return SyncTimingSettings()

    @property
    def encryption(self) -> EncryptionSettings:
        return EncryptionSettings()

    @property
    def local_file(self) -> LocalFileSettings:
        return LocalFileSettings()

    @property
    def google_drive(self) -> GoogleDriveSettings:
        return GoogleDriveSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus an
    ``<name>_error`` entry for every group that failed.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("timing", "encryption", "local_file", "google_drive", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
