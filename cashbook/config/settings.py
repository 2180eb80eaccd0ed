"""
Configuration Management for Cashbook

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


class FirestoreSettings(BaseSettings):
    """Cloud Firestore remote document store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FIRESTORE_",
        extra="ignore"
    )

    project_id: str = Field(
        ...,
        description="Firebase / Google Cloud project ID"
    )
    database_id: str = Field(
        default="(default)",
        description="Firestore database ID"
    )
    collection: str = Field(
        default="users",
        description="Collection holding one sync document per user"
    )
    credentials_path: Optional[str] = Field(
        default=None,
        description="Path to service account credentials JSON (SDK transport only)"
    )
    rest_base_url: str = Field(
        default="https://firestore.googleapis.com/v1",
        description="Base URL of the Firestore REST API"
    )
    request_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Timeout applied to every REST request"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: Optional[str]) -> Optional[str]:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if v and not Path(v).exists():
            import warnings
            warnings.warn(
                f"Firestore credentials file not found at {v}. "
                "Make sure it exists before using the SDK transport."
            )
        return v

    def document_url(self, user_id: str) -> str:
        """REST URL of the sync document for a user."""
        return (
            f"{self.rest_base_url.rstrip('/')}/projects/{self.project_id}"
            f"/databases/{self.database_id}/documents/{self.collection}/{user_id}"
        )


class StorageSettings(BaseSettings):
    """On-device record storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        extra="ignore"
    )

    backend: str = Field(
        default="sqlite",
        pattern="^(sqlite|memory)$",
        description="Key-value backend for local records"
    )
    sqlite_path: str = Field(
        default="cashbook.db",
        description="Path of the SQLite database file"
    )
    guest_id: str = Field(
        default="guest-user",
        min_length=1,
        description="Identity used to namespace local-only guest data"
    )


class SyncSettings(BaseSettings):
    """Cloud synchronization behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    debounce_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Quiet period after a local change before pushing"
    )
    follow_up_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay before the coalesced follow-up push"
    )
    connectivity_probe_url: Optional[str] = Field(
        default=None,
        description="URL probed to detect internet reachability"
    )
    connectivity_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the connectivity probe"
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

    # Runtime platform decides which remote transport can run
    platform: str = Field(
        default="android",
        description="Runtime platform (web, android, ios, ...)"
    )
    remote_transport: str = Field(
        default="auto",
        pattern="^(auto|sdk|rest)$",
        description="Force a remote transport instead of choosing by platform"
    )

    @property
    def is_web(self) -> bool:
        """Whether the process runs in a web runtime."""
        return self.platform.strip().lower() == "web"


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
    def firestore(self) -> FirestoreSettings:
        return FirestoreSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

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

    sections = {
        "firestore": lambda: settings.firestore,
        "storage": lambda: settings.storage,
        "sync": lambda: settings.sync,
        "app": lambda: settings.app,
    }

    for name, load in sections.items():
        try:
            load()
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
