"""
Foldwatch Configuration

Manages all configuration settings with environment variable support.
Key material is held as SecretStr and never logged.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import SecretStr, field_validator, model_validator
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
    app_name: str = "Foldwatch"
    app_version: str = "1.0.0"
    debug: bool = False

    # Status API
    host: str = "127.0.0.1"
    port: int = 8000

    # Relay
    relay_url: str = "wss://node1.foldingathome.org/ws/account"
    relay_origin: Optional[str] = "https://app.foldingathome.org"
    handshake_timeout: float = 30.0
    sweep_interval: float = 5.0

    # Keys
    fah_secret: Optional[SecretStr] = None
    account_public_key: Optional[SecretStr] = None
    min_key_bits: int = 2048
    max_key_bits: int = 4096

    # Reconnect
    reconnect_initial_delay: float = 1.0
    reconnect_multiplier: float = 2.0
    reconnect_max_delay: float = 60.0
    reconnect_jitter: float = 0.1
    reconnect_max_attempts: int = 5
    reconnect_max_elapsed: Optional[float] = None

    # Aggregation
    stale_after_seconds: float = 120.0
    prune_after_seconds: Optional[float] = None

    # Account stats
    fah_username: str = ""
    stats_url: str = "https://api.foldingathome.org"
    account_poll_interval: float = 300.0
    http_timeout: float = 30.0

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator(
        "handshake_timeout",
        "sweep_interval",
        "reconnect_initial_delay",
        "reconnect_max_delay",
        "stale_after_seconds",
        "account_poll_interval",
        "http_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("reconnect_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("relay_url")
    @classmethod
    def validate_relay_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("relay_url must be a ws:// or wss:// URL")
        return v

    @field_validator("host")
    @classmethod
    def validate_localhost_only(cls, v: str) -> str:
        """Status API binds to localhost only."""
        if v not in ("127.0.0.1", "localhost", "::1"):
            raise ValueError("Status API must bind to localhost only")
        return v

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        if self.min_key_bits > self.max_key_bits:
            raise ValueError("min_key_bits must not exceed max_key_bits")
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError("reconnect_max_delay must not be shorter than reconnect_initial_delay")
        if self.prune_after_seconds is not None and self.prune_after_seconds < self.stale_after_seconds:
            raise ValueError("prune_after_seconds must not be shorter than stale_after_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
