"""
Verification aggregation engine.
Fans out to every verifier registered for an exercise type, bounds each call by
its own timeout, and merges whatever evidence comes back into one result.
"""
from __future__ import annotations

import asyncio
import time
from typing import Optional

from shared.models.enums import AggregationErrorKind
from shared.utils.logging import get_logger
from shared.utils.metrics import AGGREGATION_CONFIDENCE, VERIFIER_CALLS, VERIFIER_LATENCY

from verifier.confidence import AggregationResult, compute_result
from verifier.config import VerifierSettings, get_verifier_settings
from verifier.sources.base import ChainVerifier, Evidence, VerifierRegistry

logger = get_logger(__name__)


class AggregationError(Exception):
    """Fatal to an aggregate() call. Individual source failures never raise this."""

    def __init__(self, kind: AggregationErrorKind, exercise_type: str):
        self.kind = kind
        self.exercise_type = exercise_type
        super().__init__(f"{kind.value}: {exercise_type}")


class VerificationAggregator:
    def __init__(
        self,
        registry: VerifierRegistry,
        settings: Optional[VerifierSettings] = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or get_verifier_settings()
        # Timed-out calls keep running; hold a reference until they finish.
        self._stragglers: set[asyncio.Task] = set()

    @property
    def registry(self) -> VerifierRegistry:
        return self._registry

    async def aggregate(self, account: str, exercise_type: str, required_amount: int) -> AggregationResult:
        if required_amount <= 0:
            raise ValueError("required_amount must be > 0")
        verifiers = self._registry.for_type(exercise_type)
        if not verifiers:
            raise AggregationError(AggregationErrorKind.NO_VERIFIERS_REGISTERED, exercise_type)

        outcomes = await asyncio.gather(
            *(self._bounded_verify(v, account, required_amount) for v in verifiers)
        )
        evidence = [e for e in outcomes if e is not None]
        result = compute_result(evidence, required_amount)

        AGGREGATION_CONFIDENCE.labels(exercise_type=exercise_type).observe(result.confidence)
        logger.info(
            "aggregation_completed",
            account=account,
            exercise_type=exercise_type,
            required=required_amount,
            sources=len(verifiers),
            responded=len(evidence),
            confidence=round(result.confidence, 4),
            verified_amount=result.verified_amount,
        )
        return result

    async def _bounded_verify(
        self,
        verifier: ChainVerifier,
        account: str,
        required_amount: int,
    ) -> Optional[Evidence]:
        """Run one verifier under its own timeout. Never raises."""
        source = verifier.source_id
        timeout_s = getattr(verifier, "timeout_s", None) or self._settings.verifier_timeout_s
        start = time.perf_counter()
        try:
            task = asyncio.ensure_future(verifier.verify(account, required_amount))
        except Exception as exc:
            VERIFIER_CALLS.labels(source=source, status="error").inc()
            logger.warning("verifier_failed", source=source, account=account, error=str(exc))
            return None

        done, _ = await asyncio.wait({task}, timeout=timeout_s)
        VERIFIER_LATENCY.labels(source=source).observe(time.perf_counter() - start)

        if not done:
            self._stragglers.add(task)
            task.add_done_callback(self._discard_straggler)
            VERIFIER_CALLS.labels(source=source, status="timeout").inc()
            logger.warning("verifier_timeout", source=source, account=account, timeout_s=timeout_s)
            return None

        if task.cancelled():
            VERIFIER_CALLS.labels(source=source, status="error").inc()
            logger.warning("verifier_failed", source=source, account=account, error="cancelled")
            return None

        exc = task.exception()
        if exc is not None:
            VERIFIER_CALLS.labels(source=source, status="error").inc()
            logger.warning("verifier_failed", source=source, account=account, error=str(exc))
            return None

        evidence = task.result()
        if evidence is None:
            VERIFIER_CALLS.labels(source=source, status="empty").inc()
            return None
        if not isinstance(evidence, Evidence):
            VERIFIER_CALLS.labels(source=source, status="invalid").inc()
            logger.warning("verifier_invalid_evidence", source=source, got=type(evidence).__name__)
            return None
        VERIFIER_CALLS.labels(source=source, status="ok").inc()
        return evidence

    def _discard_straggler(self, task: asyncio.Task) -> None:
        self._stragglers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("verifier_straggler_failed", error=str(task.exception()))
