"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from imgcache import __version__
from imgcache.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Optional:
        CACHE_DIR: Directory holding blobs and the metadata database
        METADATA_DB_NAME: SQLite filename under CACHE_DIR
        METADATA_KEY_PREFIX: Prefix applied to metadata keys
        USER_AGENT: User-Agent header sent with image fetches
        FETCH_TIMEOUT: Per-request timeout in seconds
        FETCH_MAX_ATTEMPTS: Transport attempts for a single fetch
        MAX_CONTENT_SIZE: Largest response body accepted, in bytes
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    CACHE_DIR: Path = Field(default=Path(".imgcache"), description="Cache directory")
    METADATA_DB_NAME: str = Field(
        default="metadata.db", description="SQLite metadata database filename"
    )
    METADATA_KEY_PREFIX: str = Field(
        default="meta!", description="Prefix for metadata keys"
    )

    # Network
    USER_AGENT: str = Field(
        default=f"imgcache/{__version__}",
        description="User-Agent header for image fetches",
    )
    FETCH_TIMEOUT: float = Field(
        default=30.0, gt=0.0, description="Request timeout in seconds"
    )
    FETCH_MAX_ATTEMPTS: int = Field(
        default=3, ge=1, le=10, description="Transport attempts per fetch"
    )
    MAX_CONTENT_SIZE: int = Field(
        default=25 * 1024 * 1024, ge=1, description="Maximum response size in bytes"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("METADATA_KEY_PREFIX")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Metadata keys must not collide with bare cache keys."""
        if not v:
            raise ValueError("METADATA_KEY_PREFIX must not be empty")
        return v

    @property
    def metadata_db_path(self) -> Path:
        """Full path of the SQLite metadata database."""
        return self.CACHE_DIR / self.METADATA_DB_NAME

    @property
    def blobs_dir(self) -> Path:
        """Directory holding blob files."""
        return self.CACHE_DIR / "blobs"

    def ensure_directories(self) -> None:
        """Create cache directories if they don't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | None]:
        """Return settings for display."""
        return {
            "CACHE_DIR": str(self.CACHE_DIR),
            "METADATA_DB_NAME": self.METADATA_DB_NAME,
            "METADATA_KEY_PREFIX": self.METADATA_KEY_PREFIX,
            "USER_AGENT": self.USER_AGENT,
            "FETCH_TIMEOUT": self.FETCH_TIMEOUT,
            "FETCH_MAX_ATTEMPTS": self.FETCH_MAX_ATTEMPTS,
            "MAX_CONTENT_SIZE": self.MAX_CONTENT_SIZE,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()


def load_settings() -> Settings:
    """Get settings, converting validation failures to ConfigurationError.

    Raises:
        ConfigurationError: If any setting is invalid. The context lists the
            offending fields.
    """
    try:
        return get_settings()
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise ConfigurationError(
            f"Invalid configuration: {', '.join(fields)}", {"fields": fields}
        ) from e
