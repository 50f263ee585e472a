"""
At-least-once notification queue.

Items move queued -> in_flight -> delivered | (queued again with backoff) | failed.
Every transition is a compare-and-set on one item, so two workers never hold
the same item in flight. A dedup key stays reserved until its item is delivered.
"""
from __future__ import annotations

import asyncio
import random
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from shared.models.domain import NotificationPayload, QueueItem, QueueStats
from shared.models.enums import DeliveryState
from shared.utils.logging import get_logger
from shared.utils.metrics import QUEUE_DEPTH, QUEUE_ENQUEUED

from notifications.config import QueueSettings, get_queue_settings

logger = get_logger(__name__)


class UnknownQueueItem(KeyError):
    pass


def compute_backoff(attempts: int, settings: QueueSettings, rng: Callable[[], float] = random.random) -> float:
    """base ** attempts seconds, ±jitter, never above the cap."""
    delay = min(settings.backoff_cap_s, settings.backoff_base_s ** attempts)
    jitter = delay * settings.jitter_factor * (2 * rng() - 1)
    return max(0.0, min(settings.backoff_cap_s, delay + jitter))


def record_depth(stats: QueueStats) -> None:
    QUEUE_DEPTH.labels(state=DeliveryState.QUEUED.value).set(stats.queued)
    QUEUE_DEPTH.labels(state=DeliveryState.IN_FLIGHT.value).set(stats.in_flight)
    QUEUE_DEPTH.labels(state=DeliveryState.DELIVERED.value).set(stats.delivered)
    QUEUE_DEPTH.labels(state=DeliveryState.FAILED.value).set(stats.failed)


class BaseNotificationQueue(ABC):
    """Contract shared by the in-process and Redis-backed queues."""

    settings: QueueSettings

    @abstractmethod
    async def enqueue(self, payload: NotificationPayload, dedup_key: str) -> str:
        """Insert a queued item, or return the id of the non-delivered item already holding dedup_key."""

    @abstractmethod
    async def dequeue_batch(self, max_items: int) -> list[QueueItem]:
        """Claim up to max_items due queued items (oldest first) and mark them in flight."""

    @abstractmethod
    async def mark_delivered(self, item_id: str) -> QueueItem:
        ...

    @abstractmethod
    async def mark_failed(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        ...

    @abstractmethod
    async def reclaim_stale(self, inflight_timeout_s: Optional[float] = None) -> int:
        """Return in-flight items nobody acknowledged in time to the queue."""

    @abstractmethod
    async def next_due_in(self) -> Optional[float]:
        """Seconds until the earliest queued item is due; None when nothing is queued."""

    @abstractmethod
    async def archive_delivered(self, max_age_s: Optional[float] = None) -> int:
        ...

    @abstractmethod
    async def failed_items(self) -> list[QueueItem]:
        ...

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...


class NotificationQueue(BaseNotificationQueue):
    """In-process queue. State lives in this object; one asyncio lock guards transitions."""

    def __init__(
        self,
        settings: Optional[QueueSettings] = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings or get_queue_settings()
        self._clock = clock
        self._rng = rng
        self._items: dict[str, QueueItem] = {}
        self._dedup: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _require(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise UnknownQueueItem(item_id)
        return item

    async def enqueue(self, payload: NotificationPayload, dedup_key: str) -> str:
        async with self._lock:
            existing_id = self._dedup.get(dedup_key)
            if existing_id is not None:
                existing = self._items.get(existing_id)
                if existing is not None and existing.state != DeliveryState.DELIVERED:
                    QUEUE_ENQUEUED.labels(deduplicated="true").inc()
                    logger.debug("queue_enqueue_deduplicated", dedup_key=dedup_key, item_id=existing_id)
                    return existing_id

            now = self._clock()
            item = QueueItem(
                payload=payload,
                dedup_key=dedup_key,
                created_at=now,
                updated_at=now,
                next_attempt_at=now,
            )
            self._items[item.id] = item
            self._dedup[dedup_key] = item.id

        QUEUE_ENQUEUED.labels(deduplicated="false").inc()
        logger.info("queue_item_enqueued", item_id=item.id, dedup_key=dedup_key)
        return item.id

    async def dequeue_batch(self, max_items: int) -> list[QueueItem]:
        if max_items <= 0:
            return []
        async with self._lock:
            now = self._clock()
            due = [
                i for i in self._items.values()
                if i.state == DeliveryState.QUEUED and i.next_attempt_at <= now
            ]
            due.sort(key=lambda i: i.created_at)
            claimed = []
            for item in due[:max_items]:
                item.state = DeliveryState.IN_FLIGHT
                item.updated_at = now
                claimed.append(item.model_copy())
        return claimed

    async def mark_delivered(self, item_id: str) -> QueueItem:
        async with self._lock:
            item = self._require(item_id)
            if item.state == DeliveryState.DELIVERED:
                return item.model_copy()
            if item.state == DeliveryState.FAILED:
                logger.warning("queue_ack_after_failure", item_id=item_id)
            item.state = DeliveryState.DELIVERED
            item.updated_at = self._clock()
            if self._dedup.get(item.dedup_key) == item_id:
                del self._dedup[item.dedup_key]
            snapshot = item.model_copy()
        logger.info("queue_item_delivered", item_id=item_id, attempts=snapshot.attempts)
        return snapshot

    async def mark_failed(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        async with self._lock:
            item = self._require(item_id)
            if item.state != DeliveryState.IN_FLIGHT:
                logger.warning("queue_fail_ignored", item_id=item_id, state=item.state.value)
                return item.model_copy()

            now = self._clock()
            item.attempts += 1
            item.last_error = error
            item.updated_at = now
            if item.attempts < self.settings.max_attempts:
                delay = compute_backoff(item.attempts, self.settings, self._rng)
                item.state = DeliveryState.QUEUED
                item.next_attempt_at = now + delay
                logger.warning(
                    "queue_item_retry_scheduled",
                    item_id=item_id,
                    attempts=item.attempts,
                    delay_s=round(delay, 2),
                    error=error,
                )
            else:
                item.state = DeliveryState.FAILED
                logger.error("queue_item_failed", item_id=item_id, attempts=item.attempts, error=error)
            return item.model_copy()

    async def reclaim_stale(self, inflight_timeout_s: Optional[float] = None) -> int:
        timeout = self.settings.inflight_timeout_s if inflight_timeout_s is None else inflight_timeout_s
        async with self._lock:
            now = self._clock()
            reclaimed = 0
            for item in self._items.values():
                if item.state == DeliveryState.IN_FLIGHT and now - item.updated_at >= timeout:
                    item.state = DeliveryState.QUEUED
                    item.next_attempt_at = now
                    item.updated_at = now
                    reclaimed += 1
        if reclaimed:
            logger.warning("queue_inflight_reclaimed", count=reclaimed, timeout_s=timeout)
        return reclaimed

    async def next_due_in(self) -> Optional[float]:
        async with self._lock:
            pending = [i.next_attempt_at for i in self._items.values() if i.state == DeliveryState.QUEUED]
            if not pending:
                return None
            return max(0.0, min(pending) - self._clock())

    async def archive_delivered(self, max_age_s: Optional[float] = None) -> int:
        max_age = self.settings.delivered_retention_s if max_age_s is None else max_age_s
        async with self._lock:
            cutoff = self._clock() - max_age
            stale = [
                item_id for item_id, i in self._items.items()
                if i.state == DeliveryState.DELIVERED and i.updated_at <= cutoff
            ]
            for item_id in stale:
                del self._items[item_id]
        if stale:
            logger.debug("queue_delivered_archived", count=len(stale))
        return len(stale)

    async def failed_items(self) -> list[QueueItem]:
        async with self._lock:
            return [i.model_copy() for i in self._items.values() if i.state == DeliveryState.FAILED]

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._lock:
            item = self._items.get(item_id)
            return item.model_copy() if item else None

    async def stats(self) -> QueueStats:
        async with self._lock:
            now = self._clock()
            counts: dict[DeliveryState, int] = {}
            oldest: Optional[float] = None
            for item in self._items.values():
                counts[item.state] = counts.get(item.state, 0) + 1
                if item.state == DeliveryState.QUEUED and (oldest is None or item.created_at < oldest):
                    oldest = item.created_at
        stats = QueueStats.from_counts(counts, None if oldest is None else max(0.0, now - oldest))
        record_depth(stats)
        return stats
