"""
Redis-backed notification queue. Survives process restarts and can be shared by
several API replicas and workers.

Layout (prefix "notify" by default):
    {p}:item:{id}       JSON-encoded QueueItem
    {p}:queued          ZSET id -> next_attempt_at
    {p}:in_flight       ZSET id -> claimed_at
    {p}:delivered       ZSET id -> delivered_at
    {p}:failed          ZSET id -> failed_at
    {p}:dedup:{key}     id of the non-delivered item holding the key

Membership in exactly one state ZSET is the item's state. Transitions are Lua
scripts that ZREM from the expected set first, so a transition whose source
state has changed underneath it is a no-op.
"""
from __future__ import annotations

import random
import time
from typing import Callable, Optional

from shared.models.domain import NotificationPayload, QueueItem, QueueStats
from shared.models.enums import DeliveryState
from shared.utils.logging import get_logger
from shared.utils.metrics import QUEUE_ENQUEUED
from shared.utils.redis_manager import RedisManager

from notifications.config import QueueSettings, get_queue_settings
from notifications.queue import BaseNotificationQueue, UnknownQueueItem, compute_backoff, record_depth

logger = get_logger(__name__)

# KEYS: dedup, item, queued   ARGV: item_json, id, next_attempt_at, item_prefix
_ENQUEUE_SCRIPT = """
local existing = redis.call("GET", KEYS[1])
if existing and redis.call("EXISTS", ARGV[4] .. existing) == 1 then
    return {0, existing}
end
redis.call("SET", KEYS[2], ARGV[1])
redis.call("ZADD", KEYS[3], ARGV[3], ARGV[2])
redis.call("SET", KEYS[1], ARGV[2])
return {1, ARGV[2]}
"""

# KEYS: queued, in_flight   ARGV: now, max_items, item_prefix
# Claimed items are patched textually; a cjson round-trip would turn {} into [].
# Each gsub rewrites only the first match, which is the item field because
# QueueItem serializes payload last.
_DEQUEUE_SCRIPT = """
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
local due = {}
for _, id in ipairs(ids) do
    local raw = redis.call("GET", ARGV[3] .. id)
    if raw then
        local item = cjson.decode(raw)
        table.insert(due, {id = id, created = tonumber(item["created_at"]), raw = raw})
    else
        redis.call("ZREM", KEYS[1], id)
    end
end
table.sort(due, function(a, b)
    if a.created == b.created then return a.id < b.id end
    return a.created < b.created
end)
local claimed = {}
local limit = math.min(tonumber(ARGV[2]), #due)
for i = 1, limit do
    local entry = due[i]
    if redis.call("ZREM", KEYS[1], entry.id) == 1 then
        local encoded = string.gsub(entry.raw, '"state":"queued"', '"state":"in_flight"', 1)
        encoded = string.gsub(encoded, '"updated_at":[^,}]+', '"updated_at":' .. ARGV[1], 1)
        redis.call("SET", ARGV[3] .. entry.id, encoded)
        redis.call("ZADD", KEYS[2], ARGV[1], entry.id)
        table.insert(claimed, encoded)
    end
end
return claimed
"""

# KEYS: from_set, to_set, item   ARGV: id, score, item_json, dedup_key_to_release ("" for none)
_TRANSITION_SCRIPT = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call("SET", KEYS[3], ARGV[3])
redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
if ARGV[4] ~= "" and redis.call("GET", ARGV[4]) == ARGV[1] then
    redis.call("DEL", ARGV[4])
end
return 1
"""


class RedisNotificationQueue(BaseNotificationQueue):
    def __init__(
        self,
        redis: RedisManager,
        settings: Optional[QueueSettings] = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._redis = redis
        self.settings = settings or get_queue_settings()
        self._clock = clock
        self._rng = rng
        p = self.settings.redis_key_prefix
        self._item_prefix = f"{p}:item:"
        self._dedup_prefix = f"{p}:dedup:"
        self._sets = {
            DeliveryState.QUEUED: f"{p}:queued",
            DeliveryState.IN_FLIGHT: f"{p}:in_flight",
            DeliveryState.DELIVERED: f"{p}:delivered",
            DeliveryState.FAILED: f"{p}:failed",
        }

    def _item_key(self, item_id: str) -> str:
        return self._item_prefix + item_id

    def _dedup_key(self, dedup_key: str) -> str:
        return self._dedup_prefix + dedup_key

    async def _load(self, item_id: str) -> Optional[QueueItem]:
        raw = await self._redis.client.get(self._item_key(item_id))
        return QueueItem.model_validate_json(raw) if raw else None

    async def _transition(
        self,
        item: QueueItem,
        from_state: DeliveryState,
        score: float,
        release_dedup: bool = False,
    ) -> bool:
        result = await self._redis.run_script(
            _TRANSITION_SCRIPT,
            keys=[self._sets[from_state], self._sets[item.state], self._item_key(item.id)],
            args=[
                item.id,
                score,
                item.model_dump_json(),
                self._dedup_key(item.dedup_key) if release_dedup else "",
            ],
        )
        return bool(result)

    async def enqueue(self, payload: NotificationPayload, dedup_key: str) -> str:
        now = self._clock()
        item = QueueItem(
            payload=payload,
            dedup_key=dedup_key,
            created_at=now,
            updated_at=now,
            next_attempt_at=now,
        )
        inserted, item_id = await self._redis.run_script(
            _ENQUEUE_SCRIPT,
            keys=[self._dedup_key(dedup_key), self._item_key(item.id), self._sets[DeliveryState.QUEUED]],
            args=[item.model_dump_json(), item.id, now, self._item_prefix],
        )
        if not int(inserted):
            QUEUE_ENQUEUED.labels(deduplicated="true").inc()
            logger.debug("queue_enqueue_deduplicated", dedup_key=dedup_key, item_id=item_id)
            return item_id
        QUEUE_ENQUEUED.labels(deduplicated="false").inc()
        logger.info("queue_item_enqueued", item_id=item_id, dedup_key=dedup_key)
        return item_id

    async def dequeue_batch(self, max_items: int) -> list[QueueItem]:
        if max_items <= 0:
            return []
        raw_items = await self._redis.run_script(
            _DEQUEUE_SCRIPT,
            keys=[self._sets[DeliveryState.QUEUED], self._sets[DeliveryState.IN_FLIGHT]],
            args=[self._clock(), max_items, self._item_prefix],
        )
        return [QueueItem.model_validate_json(raw) for raw in raw_items or []]

    async def mark_delivered(self, item_id: str) -> QueueItem:
        for _ in range(3):
            item = await self._load(item_id)
            if item is None:
                raise UnknownQueueItem(item_id)
            if item.state == DeliveryState.DELIVERED:
                return item
            if item.state == DeliveryState.FAILED:
                logger.warning("queue_ack_after_failure", item_id=item_id)
            from_state = item.state
            now = self._clock()
            item.state = DeliveryState.DELIVERED
            item.updated_at = now
            if await self._transition(item, from_state, now, release_dedup=True):
                logger.info("queue_item_delivered", item_id=item_id, attempts=item.attempts)
                return item
        raise RuntimeError(f"could not mark {item_id} delivered: state kept changing")

    async def mark_failed(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        item = await self._load(item_id)
        if item is None:
            raise UnknownQueueItem(item_id)
        if item.state != DeliveryState.IN_FLIGHT:
            logger.warning("queue_fail_ignored", item_id=item_id, state=item.state.value)
            return item

        now = self._clock()
        item.attempts += 1
        item.last_error = error
        item.updated_at = now
        if item.attempts < self.settings.max_attempts:
            delay = compute_backoff(item.attempts, self.settings, self._rng)
            item.state = DeliveryState.QUEUED
            item.next_attempt_at = now + delay
            score = item.next_attempt_at
        else:
            delay = None
            item.state = DeliveryState.FAILED
            score = now

        if not await self._transition(item, DeliveryState.IN_FLIGHT, score):
            logger.warning("queue_fail_lost_race", item_id=item_id)
            current = await self._load(item_id)
            if current is None:
                raise UnknownQueueItem(item_id)
            return current

        if delay is not None:
            logger.warning(
                "queue_item_retry_scheduled",
                item_id=item_id,
                attempts=item.attempts,
                delay_s=round(delay, 2),
                error=error,
            )
        else:
            logger.error("queue_item_failed", item_id=item_id, attempts=item.attempts, error=error)
        return item

    async def reclaim_stale(self, inflight_timeout_s: Optional[float] = None) -> int:
        timeout = self.settings.inflight_timeout_s if inflight_timeout_s is None else inflight_timeout_s
        now = self._clock()
        stale_ids = await self._redis.client.zrangebyscore(self._sets[DeliveryState.IN_FLIGHT], "-inf", now - timeout)
        reclaimed = 0
        for item_id in stale_ids:
            item = await self._load(item_id)
            if item is None or item.state != DeliveryState.IN_FLIGHT:
                continue
            item.state = DeliveryState.QUEUED
            item.next_attempt_at = now
            item.updated_at = now
            if await self._transition(item, DeliveryState.IN_FLIGHT, now):
                reclaimed += 1
        if reclaimed:
            logger.warning("queue_inflight_reclaimed", count=reclaimed, timeout_s=timeout)
        return reclaimed

    async def next_due_in(self) -> Optional[float]:
        head = await self._redis.client.zrange(self._sets[DeliveryState.QUEUED], 0, 0, withscores=True)
        if not head:
            return None
        _item_id, next_attempt_at = head[0]
        return max(0.0, float(next_attempt_at) - self._clock())

    async def archive_delivered(self, max_age_s: Optional[float] = None) -> int:
        max_age = self.settings.delivered_retention_s if max_age_s is None else max_age_s
        delivered_set = self._sets[DeliveryState.DELIVERED]
        stale_ids = await self._redis.client.zrangebyscore(delivered_set, "-inf", self._clock() - max_age)
        if not stale_ids:
            return 0
        pipe = self._redis.client.pipeline(transaction=True)
        pipe.zrem(delivered_set, *stale_ids)
        pipe.delete(*(self._item_key(i) for i in stale_ids))
        await pipe.execute()
        logger.debug("queue_delivered_archived", count=len(stale_ids))
        return len(stale_ids)

    async def _load_many(self, item_ids: list[str]) -> list[QueueItem]:
        if not item_ids:
            return []
        raws = await self._redis.client.mget([self._item_key(i) for i in item_ids])
        return [QueueItem.model_validate_json(raw) for raw in raws if raw]

    async def failed_items(self) -> list[QueueItem]:
        ids = await self._redis.client.zrange(self._sets[DeliveryState.FAILED], 0, -1)
        return await self._load_many(ids)

    async def get(self, item_id: str) -> Optional[QueueItem]:
        return await self._load(item_id)

    async def stats(self) -> QueueStats:
        pipe = self._redis.client.pipeline(transaction=False)
        states = list(self._sets)
        for state in states:
            pipe.zcard(self._sets[state])
        pipe.zrange(self._sets[DeliveryState.QUEUED], 0, -1)
        results = await pipe.execute()

        counts = {state: int(n) for state, n in zip(states, results[: len(states)])}
        queued = await self._load_many(results[len(states)])
        oldest_age = None
        if queued:
            oldest_age = max(0.0, self._clock() - min(i.created_at for i in queued))
        stats = QueueStats.from_counts(counts, oldest_age)
        record_depth(stats)
        return stats
