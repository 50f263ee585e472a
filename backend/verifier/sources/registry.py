"""
Builds the verifier registry from configuration: one indexer verifier per
(configured source, exercise type), sharing a circuit breaker per source.
Sources listed in static_amounts get a StaticChainVerifier instead, for local
runs without an indexer.
"""
from __future__ import annotations

from typing import Optional

from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.logging import get_logger

from verifier.config import VerifierSettings, get_verifier_settings
from verifier.sources.base import VerifierRegistry
from verifier.sources.indexer import IndexerChainVerifier
from verifier.sources.static import StaticChainVerifier

logger = get_logger(__name__)


def build_registry(settings: Optional[VerifierSettings] = None) -> VerifierRegistry:
    settings = settings or get_verifier_settings()
    registry = VerifierRegistry()

    if not settings.source_urls and not settings.static_amounts:
        logger.warning("no_evidence_sources_configured")
        return registry

    for source_id, url in sorted(settings.source_urls.items()):
        weight = settings.source_weights.get(source_id, settings.default_source_weight)
        circuit = CircuitBreaker(
            name=f"indexer:{source_id}",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout_s=settings.circuit_recovery_s,
        )
        for exercise_type in settings.exercise_types:
            registry.register(
                exercise_type,
                IndexerChainVerifier(
                    source_id=source_id,
                    exercise_type=exercise_type,
                    base_url=url,
                    weight=weight,
                    activity_path=settings.indexer_activity_path,
                    timeout_s=settings.verifier_timeout_s,
                    circuit=circuit,
                ),
            )
        logger.info("evidence_source_registered", source=source_id, weight=weight)

    for source_id, amounts in sorted(settings.static_amounts.items()):
        if source_id in settings.source_urls:
            logger.warning("static_source_shadowed", source=source_id)
            continue
        weight = settings.source_weights.get(source_id, settings.default_source_weight)
        for exercise_type in settings.exercise_types:
            registry.register(exercise_type, StaticChainVerifier(source_id, amounts, weight=weight))
        logger.warning("static_evidence_source_registered", source=source_id, weight=weight, accounts=len(amounts))
    return registry
