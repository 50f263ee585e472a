"""
Challenge windows: a timed dispute period wrapped around an aggregation result.

    pending -> challengeable -> finalized
                            -> disputed -> pending -> challengeable   (once)

remaining() is computed on read; nothing wakes up when a window elapses.
finalize() enqueues the outcome notification exactly once.
"""
from __future__ import annotations

import asyncio
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from shared.models.domain import NotificationPayload
from shared.models.enums import ChallengeState
from shared.utils.logging import get_logger
from shared.utils.metrics import DISPUTES, WINDOWS_FINALIZED

from verifier.confidence import AggregationResult, compute_result, replace_source_evidence
from verifier.sources.base import Evidence

if TYPE_CHECKING:
    from notifications.queue import BaseNotificationQueue

logger = get_logger(__name__)

Reaggregate = Callable[[], Awaitable[AggregationResult]]


class ChallengeError(Exception):
    """Operation not allowed in the window's current state."""


def outcome_payload(window: "ChallengeWindow") -> NotificationPayload:
    result = window.result
    pct = round(result.confidence * 100)
    text = (
        f"{window.label}: {result.message}. "
        f"Verified {result.verified_amount}/{result.total_required} "
        f"with {pct}% confidence across {len(result.proof)} source(s)."
    )
    return NotificationPayload(
        address=window.recipient,
        text=text,
        metadata={
            "windowId": window.window_id,
            "confidence": result.confidence,
            "verifiedAmount": result.verified_amount,
            "totalRequired": result.total_required,
        },
    )


class ChallengeWindow:
    def __init__(
        self,
        window_id: str,
        result: AggregationResult,
        duration_s: int,
        queue: "BaseNotificationQueue",
        recipient: str,
        reaggregate: Reaggregate,
        label: str = "",
        epsilon: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if duration_s <= 0:
            raise ValueError("duration_s must be > 0")
        self.window_id = window_id
        self.duration_s = duration_s
        self.recipient = recipient
        self.label = label or window_id
        self._queue = queue
        self._reaggregate = reaggregate
        self._epsilon = epsilon
        self._clock = clock
        self._lock = asyncio.Lock()

        self.disputes: set[Evidence] = set()
        self.transitions: list[ChallengeState] = []
        self._reopened = False
        self._outcome_item_id: Optional[str] = None
        self._finalized_at: Optional[float] = None
        self._state = ChallengeState.PENDING
        self.transitions.append(self._state)
        self._open(result)

    # ── Read side ───────────────────────────────────────────────────────
    @property
    def state(self) -> ChallengeState:
        return self._state

    @property
    def result(self) -> AggregationResult:
        return self._result

    @property
    def opens_at(self) -> float:
        return self._opens_at

    @property
    def ends_at(self) -> float:
        return self._opens_at + self.duration_s

    @property
    def reopened(self) -> bool:
        return self._reopened

    @property
    def outcome_item_id(self) -> Optional[str]:
        return self._outcome_item_id

    @property
    def finalized_at(self) -> Optional[float]:
        return self._finalized_at

    def remaining(self) -> float:
        return max(0.0, self.ends_at - self._clock())

    def snapshot(self) -> dict:
        return {
            "seconds": self.duration_s,
            "endsAt": int(self.ends_at),
            "remaining": math.ceil(self.remaining()),
        }

    # ── Transitions ─────────────────────────────────────────────────────
    def _move(self, state: ChallengeState) -> None:
        self._state = state
        self.transitions.append(state)

    def _open(self, result: AggregationResult) -> None:
        """pending -> challengeable with a fresh window starting now."""
        self._result = result
        self._opens_at = self._clock()
        self._move(ChallengeState.CHALLENGEABLE)

    async def submit_dispute(self, evidence: Evidence) -> bool:
        """
        Record a dispute. Returns True when it was material, i.e. it would move the
        verified amount by more than epsilon.

        The first material dispute re-aggregates from scratch and re-opens the
        window; later material disputes are recorded only.
        """
        async with self._lock:
            if self._state != ChallengeState.CHALLENGEABLE or self.remaining() <= 0:
                raise ChallengeError(f"window {self.window_id} is not accepting disputes ({self._state.value})")
            self.disputes.add(evidence)

            candidate = compute_result(
                replace_source_evidence(self._result.proof, evidence),
                self._result.total_required,
            )
            material = abs(candidate.verified_amount - self._result.verified_amount) > self._epsilon
            DISPUTES.labels(material=str(material).lower()).inc()

            if not material:
                logger.info("dispute_recorded", window_id=self.window_id, source=evidence.source_id)
                return False
            if self._reopened:
                logger.warning(
                    "dispute_recorded_reopen_exhausted",
                    window_id=self.window_id,
                    source=evidence.source_id,
                    candidate_verified=candidate.verified_amount,
                )
                return True

            self._move(ChallengeState.DISPUTED)
            self._reopened = True
            logger.info(
                "window_disputed",
                window_id=self.window_id,
                source=evidence.source_id,
                verified=self._result.verified_amount,
                candidate_verified=candidate.verified_amount,
            )
            try:
                fresh = await self._reaggregate()
            except Exception as exc:
                logger.error("dispute_reaggregation_failed", window_id=self.window_id, error=str(exc), exc_info=True)
                return True

            self._move(ChallengeState.PENDING)
            self._open(fresh)
            logger.info(
                "window_reopened",
                window_id=self.window_id,
                confidence=round(fresh.confidence, 4),
                verified=fresh.verified_amount,
                ends_at=self.ends_at,
            )
            return True

    async def finalize(self) -> str:
        """Finalize an elapsed window and enqueue its outcome. Idempotent: returns the same item id."""
        async with self._lock:
            if self._state == ChallengeState.FINALIZED and self._outcome_item_id is not None:
                return self._outcome_item_id
            if self._state == ChallengeState.DISPUTED:
                raise ChallengeError(f"window {self.window_id} is disputed")
            if self.remaining() > 0:
                raise ChallengeError(f"window {self.window_id} still open for {self.remaining():.0f}s")

            item_id = await self._queue.enqueue(outcome_payload(self), dedup_key=f"outcome:{self.window_id}")
            self._outcome_item_id = item_id
            self._finalized_at = self._clock()
            self._move(ChallengeState.FINALIZED)

        WINDOWS_FINALIZED.inc()
        logger.info(
            "window_finalized",
            window_id=self.window_id,
            confidence=round(self._result.confidence, 4),
            verified=self._result.verified_amount,
            item_id=item_id,
        )
        return item_id


@dataclass(frozen=True)
class FinalizedOutcome:
    """What remains of a finalized window once it is pruned from the book."""

    window_id: str
    result: AggregationResult
    outcome_item_id: str
    duration_s: int
    ends_at: float
    finalized_at: float

    @property
    def state(self) -> ChallengeState:
        return ChallengeState.FINALIZED

    def remaining(self) -> float:
        return 0.0

    def snapshot(self) -> dict:
        return {"seconds": self.duration_s, "endsAt": int(self.ends_at), "remaining": 0}


class ChallengeBook:
    """
    Challenge windows, one per prediction.

    Finalized windows stay live for retention_s, then shrink to a
    FinalizedOutcome so later lookups still report the outcome without
    opening (and enqueuing for) a second window. At most max_tombstones
    outcomes are kept; the oldest go first.
    """

    def __init__(
        self,
        queue: "BaseNotificationQueue",
        duration_s: int,
        epsilon: float = 0.5,
        clock: Callable[[], float] = time.time,
        retention_s: float = 3600.0,
        max_tombstones: int = 10_000,
    ) -> None:
        self._queue = queue
        self._duration_s = duration_s
        self._epsilon = epsilon
        self._clock = clock
        self._retention_s = retention_s
        self._max_tombstones = max_tombstones
        self._windows: dict[int, ChallengeWindow] = {}
        self._tombstones: OrderedDict[int, FinalizedOutcome] = OrderedDict()

    def get(self, prediction_id: int) -> Optional[Union[ChallengeWindow, FinalizedOutcome]]:
        window = self._windows.get(prediction_id)
        if window is not None:
            return window
        return self._tombstones.get(prediction_id)

    def get_or_open(
        self,
        prediction_id: int,
        result: AggregationResult,
        recipient: str,
        reaggregate: Reaggregate,
        label: str = "",
    ) -> Union[ChallengeWindow, FinalizedOutcome]:
        existing = self.get(prediction_id)
        if existing is not None:
            return existing
        window = ChallengeWindow(
            window_id=f"prediction-{prediction_id}",
            result=result,
            duration_s=self._duration_s,
            queue=self._queue,
            recipient=recipient,
            reaggregate=reaggregate,
            label=label or f"Prediction #{prediction_id}",
            epsilon=self._epsilon,
            clock=self._clock,
        )
        self._windows[prediction_id] = window
        logger.info("window_opened", window_id=window.window_id, ends_at=window.ends_at)
        return window

    async def finalize_due(self) -> list[str]:
        """Finalize every challengeable window whose period has elapsed, then prune."""
        item_ids: list[str] = []
        for window in list(self._windows.values()):
            if window.state != ChallengeState.CHALLENGEABLE or window.remaining() > 0:
                continue
            try:
                item_ids.append(await window.finalize())
            except ChallengeError as exc:
                logger.debug("window_finalize_skipped", window_id=window.window_id, reason=str(exc))
        self.prune()
        return item_ids

    def prune(self) -> int:
        """Turn finalized windows older than retention_s into tombstones. Returns how many were pruned."""
        cutoff = self._clock() - self._retention_s
        pruned = 0
        for prediction_id, window in list(self._windows.items()):
            if window.state != ChallengeState.FINALIZED or window.finalized_at is None:
                continue
            if window.finalized_at > cutoff or window.outcome_item_id is None:
                continue
            del self._windows[prediction_id]
            self._tombstones[prediction_id] = FinalizedOutcome(
                window_id=window.window_id,
                result=window.result,
                outcome_item_id=window.outcome_item_id,
                duration_s=window.duration_s,
                ends_at=window.ends_at,
                finalized_at=window.finalized_at,
            )
            pruned += 1

        evicted = 0
        while len(self._tombstones) > self._max_tombstones:
            self._tombstones.popitem(last=False)
            evicted += 1
        if pruned or evicted:
            logger.info("windows_pruned", pruned=pruned, evicted=evicted, live=len(self._windows))
        return pruned

    @property
    def tombstones(self) -> int:
        return len(self._tombstones)

    def __len__(self) -> int:
        return len(self._windows)
