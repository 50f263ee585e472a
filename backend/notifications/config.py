"""
Notification queue and worker configuration (SP_QUEUE_ prefix).
"""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SP_QUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Retry policy
    max_attempts: int = Field(default=5, ge=1, description="Failures before an item is terminally failed")
    backoff_base_s: float = Field(default=2.0, description="Backoff is base ** attempts seconds")
    backoff_cap_s: float = Field(default=300.0, description="Upper bound on a single backoff delay")
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0, description="Jitter as fraction of delay (0.2 = ±20%)")

    # Worker loop
    batch_size: int = Field(default=10, ge=1)
    poll_interval_s: float = Field(default=2.0, gt=0.0)
    delivery_timeout_s: float = Field(default=10.0, description="Timeout for one transport send")
    inflight_timeout_s: float = Field(default=60.0, description="In-flight items older than this are reclaimed")
    sweep_interval_s: float = Field(default=30.0)

    # Retention
    delivered_retention_s: float = Field(default=5 * 60.0, description="Delivered items are archived after this")

    # Redis backend
    redis_key_prefix: str = "notify"


def get_queue_settings() -> QueueSettings:
    return QueueSettings()
