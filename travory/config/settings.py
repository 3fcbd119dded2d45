"""
Configuration Management for Travory

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Local entity store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRAVORY_STORE_",
        extra="ignore"
    )

    database_path: str = Field(
        default="travory.db",
        description="Path to the local SQLite database (':memory:' for tests)"
    )


class ImageSettings(BaseSettings):
    """Image side-channel configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRAVORY_IMAGES_",
        extra="ignore"
    )

    directory: str = Field(
        default="documents",
        description="Directory that holds locally stored images"
    )
    jpeg_quality: int = Field(
        default=70,
        ge=1,
        le=95,
        description="JPEG quality used when normalising saved images"
    )
    max_size_mb: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Largest image accepted by the side channel"
    )

    @property
    def max_size_bytes(self) -> int:
        """Get max image size in bytes."""
        return self.max_size_mb * 1024 * 1024


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets remote store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    records_sheet_name: str = Field(
        default="Records",
        description="Name of the sheet mirroring replicated records"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class ReplicationSettings(BaseSettings):
    """Cloud replication bridge configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRAVORY_REPLICATION_",
        extra="ignore"
    )

    pull_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How often remote changes are pulled"
    )
    retry_min_wait_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Smallest backoff between replication retries"
    )
    retry_max_wait_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Largest backoff between replication retries"
    )
    max_attempts: Optional[int] = Field(
        default=None,
        ge=1,
        description="Give up after this many attempts (None = retry forever)"
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
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for local structured logs"
    )

    # Sharing
    share_code_prefix: str = Field(
        default="TRAVEL",
        min_length=1,
        max_length=12,
        description="Prefix of generated share codes"
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

    # Note: These are loaded lazily to allow partial configuration

    @property
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def images(self) -> ImageSettings:
        return ImageSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def replication(self) -> ReplicationSettings:
        return ReplicationSettings()

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

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("store", "images", "google_sheets", "replication", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
