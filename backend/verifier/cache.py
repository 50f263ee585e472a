"""
Resolution cache: memoizes aggregation results per (account, exercise type, required amount).

No background revalidation. Staleness is bounded by the TTL and explicit
invalidate()/clear(). Results are immutable, so concurrent puts for one key
are last-writer-wins without corruption.
"""
from __future__ import annotations

import time
from typing import Callable, NamedTuple, Optional

from shared.utils.logging import get_logger
from shared.utils.metrics import CACHE_LOOKUPS

from verifier.confidence import AggregationResult

logger = get_logger(__name__)


class CacheKey(NamedTuple):
    account: str
    exercise_type: str
    required_amount: int


class _Entry(NamedTuple):
    result: AggregationResult
    expires_at: float


class ResolutionCache:
    def __init__(self, default_ttl_s: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl_s = default_ttl_s
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}

    def get(self, key: CacheKey) -> Optional[AggregationResult]:
        entry = self._entries.get(key)
        if entry is None:
            CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        if self._clock() >= entry.expires_at:
            # Only drop the entry we looked at; a concurrent put may have replaced it.
            if self._entries.get(key) is entry:
                del self._entries[key]
            CACHE_LOOKUPS.labels(result="expired").inc()
            return None
        CACHE_LOOKUPS.labels(result="hit").inc()
        return entry.result

    def put(self, key: CacheKey, result: AggregationResult, ttl_s: Optional[float] = None) -> None:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        if ttl <= 0:
            return
        self._entries[key] = _Entry(result=result, expires_at=self._clock() + ttl)

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Wipe every entry. Privileged; callers gate it."""
        count = len(self._entries)
        self._entries.clear()
        logger.info("resolution_cache_cleared", entries=count)
        return count

    def __len__(self) -> int:
        return len(self._entries)
