"""
KeyGate Configuration

Manages all configuration settings with environment variable support.
The API token is generated per process when not configured and is never logged.
"""

import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "KeyGate"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = 3000

    # Security
    api_token: str = Field(default_factory=lambda: secrets.token_urlsafe(32))

    # Storage
    data_dir: Path = Field(default_factory=lambda: Path("./data"))
    db_busy_timeout_seconds: float = 5.0
    store_timeout_seconds: float = 10.0

    # Keys
    key_entropy_bytes: int = 8
    issue_max_attempts: int = 3
    list_default_limit: int = 200
    list_max_limit: int = 1000

    # Expiry sweeper
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 300.0

    # Audit identity used when the service itself consumes a key
    service_actor_id: str = "keygate"
    service_actor_name: str = "KeyGate Verifier"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("data_dir", mode="after")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Create data directory if it doesn't exist."""
        v.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("key_entropy_bytes")
    @classmethod
    def validate_key_entropy(cls, v: int) -> int:
        """Identifiers must carry at least 64 bits of entropy."""
        if v < 8:
            raise ValueError("key_entropy_bytes must be at least 8 (64 bits)")
        return v

    @field_validator("issue_max_attempts", "list_default_limit", "list_max_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database."""
        return self.data_dir / "keygate.db"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
