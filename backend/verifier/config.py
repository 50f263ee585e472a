"""
Verifier configuration.
Uses SP_VERIFIER_ prefix; evidence sources, timeouts, challenge window and cache TTL.
"""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models.enums import EvidenceSource, ExerciseType


class VerifierSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SP_VERIFIER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Evidence sources
    exercise_types: list[str] = Field(
        default=[e.value for e in ExerciseType],
        description="Exercise types every configured source is registered for",
    )
    source_urls: dict[str, str] = Field(
        default_factory=dict,
        description="Activity indexer base URL per source, e.g. {\"celo\": \"https://...\"}",
    )
    source_weights: dict[str, float] = Field(
        default={EvidenceSource.CELO.value: 1.0, EvidenceSource.BASE.value: 1.0, EvidenceSource.BSC.value: 0.8},
        description="Trust weight in (0, 1] per source",
    )
    default_source_weight: float = Field(default=0.5, gt=0.0, le=1.0)
    indexer_activity_path: str = "/v1/activity"
    static_amounts: dict[str, dict[str, int]] = Field(
        default_factory=dict,
        description="Dev only: fixed per-account amounts per source, e.g. {\"celo\": {\"0xabc\": 120}}",
    )

    # Timeouts
    verifier_timeout_s: float = Field(default=5.0, description="Per-verifier call timeout")

    # Circuit breaker per source
    circuit_failure_threshold: int = 5
    circuit_recovery_s: float = 60.0

    # Challenge window
    challenge_window_s: int = Field(default=2 * 60 * 60, description="Dispute period after a result is computed")
    dispute_epsilon: float = Field(default=0.5, description="Verified-amount change that makes a dispute material")
    finalize_interval_s: float = Field(default=15.0, description="How often elapsed windows are finalized")
    finalized_retention_s: float = Field(default=3600.0, description="How long a finalized window stays live before pruning")
    finalized_tombstones_max: int = Field(default=10_000, description="Pruned outcomes remembered per process")

    # Resolution cache
    cache_ttl_s: float = Field(default=300.0, description="TTL for memoized aggregation results")


def get_verifier_settings() -> VerifierSettings:
    return VerifierSettings()
