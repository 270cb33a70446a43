"""
Configuration management using Pydantic Settings.
Loads settings from environment variables and .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Run artifact storage settings."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    workspace_root: str = Field(
        default=".",
        description="Workspace whose analysis artifacts are stored",
    )
    app_dir: str = Field(
        default=".shadow",
        description="Hidden application directory inside the workspace",
    )
    docs_subdir: str = Field(default="docs", description="Subdirectory holding run directories")
    index_width: int = Field(default=4, description="Zero-padding width of per-item arrival indexes")
    json_indent: int = Field(default=2, description="Indentation used for persisted JSON")

    @property
    def docs_dir(self) -> Path:
        """Directory that contains every run directory."""
        return Path(self.workspace_root) / self.app_dir / self.docs_subdir


class WatcherSettings(BaseSettings):
    """Filesystem watch configuration."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_")

    enabled: bool = Field(default=True, description="Enable filesystem change notifications")
    join_timeout: float = Field(
        default=5.0, description="Seconds to wait for an observer thread on release"
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: ["**/.*.tmp"],
        description="Globs never delivered to any subscriber",
    )


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="runstore", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=True, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="auto", description="Console log format (auto/console/json)")
    log_file: Optional[str] = Field(default=None, description="Optional JSON log file")
    log_file_max_bytes: int = Field(default=5_000_000, description="Rotate the log file past this size")
    log_file_backups: int = Field(default=3, description="Rotated log files kept")

    # Server
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8765, description="Server port")

    # Sub-settings
    storage: StorageSettings = Field(default_factory=StorageSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"app_env must be one of {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = {"auto", "console", "json"}
        if v.lower() not in allowed:
            raise ValueError(f"log_format must be one of {allowed}")
        return v.lower()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience function for accessing settings
settings = get_settings()
