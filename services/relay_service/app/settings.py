"""Relay service configuration using Pydantic Settings.

Secrets and endpoints have no defaults: the process refuses to start unless
``RELAY_SIGNING_KEY``, ``RELAY_ENCRYPTION_KEY``, ``RELAY_UPSTREAM_BASE_URL``,
``RELAY_INVITE_CODE`` and ``RELAY_DATABASE_URL`` are provided.
"""

from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SECRET_FIELDS = {"signing_key", "encryption_key", "invite_code", "database_url"}


class RelaySettings(BaseSettings):
    """Typed configuration for the relay service.

    Resolution precedence: environment variables > .env file > code defaults.
    """
    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "relay-service"
    environment: str = "local"
    log_level: str = "INFO"

    # Required at startup
    signing_key: str = Field(min_length=32)
    encryption_key: str = Field(min_length=1)
    upstream_base_url: str = Field(min_length=1)
    invite_code: str = Field(min_length=1)
    database_url: str = Field(min_length=1)

    jwt_issuer: str = "chat-relay"
    jwt_audience: str = "chat-relay"
    access_token_expires_minutes: int = 15
    refresh_token_expires_days: int = 7
    refresh_token_reuse_grace_seconds: int = 10

    upstream_connect_timeout_seconds: float = 10.0
    # Must stay above the upstream long-poll window (~90s)
    upstream_read_timeout_seconds: float = 100.0
    upstream_max_retries: int = 3
    upstream_backoff_base_seconds: float = 2.0
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 30.0
    relay_retry_delay_seconds: float = 2.0

    requests_per_minute: int = 100
    rate_limit_window_seconds: int = 60

    auto_migrate: bool = True
    otel_endpoint: str | None = None

    @field_validator("upstream_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def safe_dict(self) -> dict[str, Any]:
        """Settings as a dict with every secret masked, for startup logging."""
        data = self.model_dump()
        for key in _SECRET_FIELDS:
            if data.get(key):
                data[key] = "***"
        return data


@lru_cache
def relay_settings() -> RelaySettings:
    """Return a cached settings instance for reuse across the app."""
    return RelaySettings()
