"""Application configuration using pydantic-settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LIBMIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "libmirror"
    version: str = "0.1.0"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8484, description="Server port")

    # Paths
    config_path: Path = Field(
        default=Path("./config"),
        description="Path for configuration files and database",
    )
    storage_path: Path = Field(
        default=Path("./config/local_images"),
        description="Root for per-library local copies of images and thumbnails",
    )

    # Database
    database_url: str | None = Field(
        default=None,
        description="Database connection URL (defaults to a SQLite file under config_path)",
    )

    # CORS
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )

    # Importer
    sync_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Items fetched and committed per import transaction",
    )

    # Local source (cloud placeholders)
    materialization_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds to wait for a cloud placeholder to download",
    )
    materialization_poll_interval: float = Field(
        default=0.2,
        gt=0,
        description="Seconds between placeholder download status checks",
    )

    # Sorting
    global_sort_type: Literal["dateAdded", "title", "rating"] = Field(
        default="dateAdded",
        description="Item sort used until the user picks one",
    )
    global_sort_ascending: bool = True

    # Remote request pacing
    gdrive_max_concurrent_requests: int = Field(
        default=2,
        ge=1,
        description="Maximum in-flight Google Drive requests",
    )
    gdrive_release_spacing: float = Field(
        default=0.2,
        ge=0,
        description="Delay before a released Google Drive slot is handed to the next waiter",
    )
    retry_max_retries: int = Field(
        default=5,
        ge=0,
        description="Retries after the initial attempt for retryable remote failures",
    )
    retry_base_delay: float = Field(
        default=2.0,
        ge=0,
        description="Base delay in seconds for exponential backoff",
    )
    http_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for Microsoft Graph requests",
    )

    # Google OAuth (for refreshing stored tokens)
    gdrive_client_id: str | None = Field(
        default=None,
        description="Google OAuth client ID",
    )
    gdrive_client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret",
    )
    gdrive_refresh_token: str | None = Field(
        default=None,
        description="Google OAuth refresh token for the Drive account",
    )

    # Microsoft OAuth
    onedrive_client_id: str | None = Field(
        default=None,
        description="Microsoft application (client) ID",
    )
    onedrive_refresh_token: str | None = Field(
        default=None,
        description="Microsoft OAuth refresh token for the OneDrive account",
    )
    onedrive_tenant: str = Field(
        default="consumers",
        description="Microsoft identity tenant used for token refresh",
    )

    @property
    def db_path(self) -> Path:
        """Get the SQLite database file path."""
        return self.config_path / "libmirror.db"


# Global settings instance
settings = Settings()
