"""
Central configuration for all SweatProof services.
Uses pydantic-settings for env-based config with validation.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Any
from urllib.parse import urlparse

from pydantic import Field, RedisDsn, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class QueueBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """Root settings shared across all services."""

    model_config = SettingsConfigDict(
        env_prefix="SP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = "INFO"
    instance_id: str = Field(default="", description="Unique pod/container ID, bound into every log line")

    # ── Redis ────────────────────────────────────────────────
    redis_url: RedisDsn = Field(default="redis://redis:6379/0")
    redis_max_connections: int = 20

    # ── API ──────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = ["*"]

    # ── Notification delivery ────────────────────────────────
    queue_backend: QueueBackend = QueueBackend.MEMORY
    run_worker_in_api: bool = Field(
        default=True,
        description="Run the queue worker inside the API process. Required for the memory backend.",
    )

    # ── Observability ────────────────────────────────────────
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @property
    def redis_url_str(self) -> str:
        return str(self.redis_url)

    @property
    def redis_url_safe_log(self) -> str:
        """URL with password redacted, for logging only."""
        try:
            u = urlparse(str(self.redis_url))
            netloc = f"***@{u.hostname}" if u.password else (u.hostname or "?")
            if u.port:
                netloc += f":{u.port}"
            return f"{u.scheme}://{netloc}{u.path}"
        except Exception:
            return "redis://***"

    @property
    def allows_privileged_ops(self) -> bool:
        return self.environment == Environment.DEV


class BotSettings(BaseSettings):
    """
    Messaging-bot configuration. Reads the bot's own env names (BOT_PRIVATE_KEY,
    XMTP_ENV, ...) so the same .env serves the bot service and this one.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    bot_private_key: SecretStr | None = None
    encryption_key: SecretStr | None = None
    openai_api_key: SecretStr | None = None
    xmtp_env: str | None = None
    prediction_bot_xmtp_address: str | None = None
    xmtp_bot_service_url: str = "http://localhost:3001"
    bot_request_timeout_s: float = 10.0

    @property
    def configured(self) -> bool:
        return bool(self.bot_private_key and self.encryption_key and self.xmtp_env)

    def configuration_flags(self) -> dict[str, Any]:
        """Presence flags and network selector only; never secret values."""
        return {
            "botPrivateKey": self.bot_private_key is not None,
            "encryptionKey": self.encryption_key is not None,
            "openaiKey": self.openai_api_key is not None,
            "xmtpEnv": self.xmtp_env or "not_set",
            "botAddress": self.prediction_bot_xmtp_address or "not_set",
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton access to validated settings."""
    return Settings()


@lru_cache(maxsize=1)
def get_bot_settings() -> BotSettings:
    return BotSettings()
