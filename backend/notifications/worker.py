"""
Queue worker: drains the notification queue into the bot transport.

Each pass claims a batch, sends every item under a timeout and records the
outcome on the item. A periodic sweep hands items stranded in flight (worker
died mid-send) back to the queue.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from shared.models.domain import QueueItem
from shared.utils.logging import get_logger, log_context
from shared.utils.metrics import QUEUE_DELIVERIES

from notifications.queue import BaseNotificationQueue
from notifications.transport import BotTransport

logger = get_logger(__name__)


class QueueWorker:
    def __init__(
        self,
        queue: BaseNotificationQueue,
        transport: BotTransport,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._transport = transport
        self._settings = queue.settings
        self._clock = clock
        self._last_sweep: Optional[float] = None

    async def _deliver(self, item: QueueItem) -> None:
        try:
            await asyncio.wait_for(
                self._transport.send(item.payload.address, item.payload.text),
                timeout=self._settings.delivery_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            QUEUE_DELIVERIES.labels(status="timeout").inc()
            await self._queue.mark_failed(item.id, f"delivery timed out after {self._settings.delivery_timeout_s}s")
            return
        except Exception as exc:
            QUEUE_DELIVERIES.labels(status="error").inc()
            await self._queue.mark_failed(item.id, str(exc) or type(exc).__name__)
            return

        QUEUE_DELIVERIES.labels(status="delivered").inc()
        await self._queue.mark_delivered(item.id)

    async def run_once(self) -> int:
        """Deliver one batch. Returns how many items were attempted."""
        batch = await self._queue.dequeue_batch(self._settings.batch_size)
        for item in batch:
            with log_context(item_id=item.id, dedup_key=item.dedup_key, attempt=item.attempts):
                await self._deliver(item)
        if batch:
            logger.debug("queue_batch_processed", size=len(batch))
        return len(batch)

    async def sweep(self) -> int:
        """Reclaim stranded in-flight items and archive delivered ones."""
        self._last_sweep = self._clock()
        reclaimed = await self._queue.reclaim_stale(self._settings.inflight_timeout_s)
        await self._queue.archive_delivered(self._settings.delivered_retention_s)
        return reclaimed

    def _sweep_due(self) -> bool:
        return self._last_sweep is None or self._clock() - self._last_sweep >= self._settings.sweep_interval_s

    async def _idle_delay(self) -> float:
        next_due = await self._queue.next_due_in()
        if next_due is None:
            return self._settings.poll_interval_s
        return min(self._settings.poll_interval_s, next_due)

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Loop until stop is set or the task is cancelled."""
        stop = stop or asyncio.Event()
        logger.info("queue_worker_started", batch_size=self._settings.batch_size)
        while not stop.is_set():
            try:
                if self._sweep_due():
                    await self.sweep()
                processed = await self.run_once()
                # A full batch means more may be due right now.
                if processed >= self._settings.batch_size:
                    continue
                delay = await self._idle_delay()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("queue_worker_error", error=str(exc))
                delay = self._settings.poll_interval_s

            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("queue_worker_stopped")
