"""
Integration tests for the Redis-backed notification queue.

Requires Redis. Run with: pytest backend/tests/test_redis_queue.py -v
Skipped when Redis is not reachable or SKIP_REDIS_TESTS is set.
"""
from __future__ import annotations

import asyncio
import os
import uuid

import pytest

from notifications.config import QueueSettings
from notifications.redis_queue import RedisNotificationQueue
from shared.config import Settings
from shared.models.domain import NotificationPayload
from shared.models.enums import DeliveryState
from shared.utils.redis_manager import RedisManager

REDIS_URL = os.getenv("SP_REDIS_URL", "redis://localhost:6379/0")
SKIP_REDIS = os.getenv("SKIP_REDIS_TESTS", "").lower() in ("1", "true", "yes")

pytestmark = pytest.mark.skipif(SKIP_REDIS, reason="SKIP_REDIS_TESTS set")


async def _queue(clock, **overrides) -> tuple[RedisManager, RedisNotificationQueue]:
    redis = RedisManager(Settings(redis_url=REDIS_URL))
    try:
        await redis.connect()
    except Exception as e:
        pytest.skip(f"Redis not available: {e}")
    settings = QueueSettings(redis_key_prefix=f"test-notify-{uuid.uuid4().hex[:8]}", **overrides)
    return redis, RedisNotificationQueue(redis, settings, clock=clock, rng=lambda: 0.5)


async def _cleanup(redis: RedisManager, queue: RedisNotificationQueue) -> None:
    keys = [k async for k in redis.client.scan_iter(match=f"{queue.settings.redis_key_prefix}:*")]
    if keys:
        await redis.client.delete(*keys)
    await redis.disconnect()


def _payload(n: int = 0) -> NotificationPayload:
    return NotificationPayload(address=f"0xUser{n}", text=f"message {n}")


@pytest.mark.asyncio
async def test_redis_enqueue_dedup_and_fifo(clock) -> None:
    redis, queue = await _queue(clock)
    try:
        first = await queue.enqueue(_payload(1), "outcome:prediction-1")
        assert await queue.enqueue(_payload(1), "outcome:prediction-1") == first
        clock.advance(1)
        second = await queue.enqueue(_payload(2), "outcome:prediction-2")

        batch = await queue.dequeue_batch(10)
        assert [i.id for i in batch] == [first, second]
        assert all(i.state == DeliveryState.IN_FLIGHT for i in batch)
        assert await queue.dequeue_batch(10) == []
    finally:
        await _cleanup(redis, queue)


@pytest.mark.asyncio
async def test_redis_concurrent_dequeue_never_double_claims(clock) -> None:
    redis, queue = await _queue(clock)
    try:
        for n in range(12):
            await queue.enqueue(_payload(n), f"k{n}")
        batches = await asyncio.gather(*(queue.dequeue_batch(5) for _ in range(4)))
        claimed = [i.id for b in batches for i in b]
        assert len(claimed) == 12
        assert len(set(claimed)) == 12
    finally:
        await _cleanup(redis, queue)


@pytest.mark.asyncio
async def test_redis_retry_then_failed(clock) -> None:
    redis, queue = await _queue(clock, max_attempts=2)
    try:
        item_id = await queue.enqueue(_payload(), "outcome:prediction-3")
        await queue.dequeue_batch(1)
        item = await queue.mark_failed(item_id, "bot down")
        assert item.state == DeliveryState.QUEUED
        assert await queue.next_due_in() == pytest.approx(2.0, abs=0.01)

        clock.advance(2)
        await queue.dequeue_batch(1)
        item = await queue.mark_failed(item_id, "bot down")
        assert item.state == DeliveryState.FAILED
        assert [i.id for i in await queue.failed_items()] == [item_id]

        stats = await queue.stats()
        assert stats.failed == 1
        assert stats.total == 1
        assert await queue.enqueue(_payload(), "outcome:prediction-3") == item_id
    finally:
        await _cleanup(redis, queue)


@pytest.mark.asyncio
async def test_redis_deliver_reclaim_archive(clock) -> None:
    redis, queue = await _queue(clock)
    try:
        stranded = await queue.enqueue(_payload(1), "a")
        delivered = await queue.enqueue(_payload(2), "b")
        await queue.dequeue_batch(2)
        await queue.mark_delivered(delivered)

        clock.advance(60)
        assert await queue.reclaim_stale() == 1
        assert (await queue.get(stranded)).state == DeliveryState.QUEUED

        clock.advance(240)
        assert await queue.archive_delivered() == 1
        assert await queue.get(delivered) is None
        assert await queue.enqueue(_payload(2), "b") != delivered
    finally:
        await _cleanup(redis, queue)


@pytest.mark.asyncio
async def test_redis_claim_leaves_payload_metadata_untouched(clock) -> None:
    redis, queue = await _queue(clock)
    try:
        metadata = {"state": "queued", "updated_at": 12345, "windowId": "prediction-3"}
        item_id = await queue.enqueue(
            NotificationPayload(address="0xUser3", text="outcome", metadata=metadata),
            "outcome:prediction-3",
        )
        clock.advance(5)

        (claimed,) = await queue.dequeue_batch(1)
        assert claimed.id == item_id
        assert claimed.state == DeliveryState.IN_FLIGHT
        assert claimed.updated_at == clock.now
        assert claimed.payload.metadata == metadata

        stored = await queue.get(item_id)
        assert stored.state == DeliveryState.IN_FLIGHT
        assert stored.payload.metadata == metadata
    finally:
        await _cleanup(redis, queue)
