"""
Resolution service: the path a status request takes.

    cache lookup -> aggregate on miss -> cache -> challenge window per prediction

Elapsed windows are finalized by run_finalize_loop(), which enqueues the
outcome notification; the request path never waits on delivery.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Union

from shared.utils.logging import get_logger

from verifier.cache import CacheKey, ResolutionCache
from verifier.challenge import ChallengeBook, ChallengeWindow, FinalizedOutcome
from verifier.confidence import AggregationResult
from verifier.engine import VerificationAggregator

logger = get_logger(__name__)


class ResolutionService:
    def __init__(
        self,
        aggregator: VerificationAggregator,
        cache: ResolutionCache,
        windows: ChallengeBook,
        cache_ttl_s: Optional[float] = None,
    ) -> None:
        self.aggregator = aggregator
        self.cache = cache
        self.windows = windows
        self._cache_ttl_s = cache_ttl_s

    async def resolve(self, account: str, exercise_type: str, required_amount: int) -> AggregationResult:
        key = CacheKey(account, exercise_type, required_amount)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = await self.aggregator.aggregate(account, exercise_type, required_amount)
        self.cache.put(key, result, self._cache_ttl_s)
        return result

    async def recompute(self, account: str, exercise_type: str, required_amount: int) -> AggregationResult:
        """Discard the cached result and aggregate from scratch."""
        key = CacheKey(account, exercise_type, required_amount)
        self.cache.invalidate(key)
        result = await self.aggregator.aggregate(account, exercise_type, required_amount)
        self.cache.put(key, result, self._cache_ttl_s)
        return result

    async def status(
        self,
        prediction_id: int,
        account: str,
        exercise_type: str,
        required_amount: int,
    ) -> Union[ChallengeWindow, FinalizedOutcome]:
        """The prediction's challenge window, opened on first request. Pruned windows come back as their FinalizedOutcome."""
        window = self.windows.get(prediction_id)
        if window is not None:
            return window
        result = await self.resolve(account, exercise_type, required_amount)

        async def reaggregate() -> AggregationResult:
            return await self.recompute(account, exercise_type, required_amount)

        return self.windows.get_or_open(
            prediction_id,
            result,
            recipient=account,
            reaggregate=reaggregate,
            label=f"Prediction #{prediction_id} ({required_amount} {exercise_type})",
        )


async def run_finalize_loop(service: ResolutionService, interval_s: float) -> None:
    """Finalize elapsed challenge windows every interval_s seconds."""
    while True:
        try:
            finalized = await service.windows.finalize_due()
            if finalized:
                logger.info("windows_finalized", count=len(finalized))
            await asyncio.sleep(interval_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("finalize_loop_error", error=str(e))
            await asyncio.sleep(interval_s)
