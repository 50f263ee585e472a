"""
Circuit breaker for outbound evidence-source calls.

closed    -> calls pass through; consecutive failures are counted
open      -> calls fail fast with CircuitBreakerOpen until the cooldown elapses
half_open -> a limited number of probe calls decide whether to close or re-open
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised instead of calling the guarded source while the circuit is open."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open; retry after {retry_after:.0f}s")


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self.half_open_max = half_open_max
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probes = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.recovery_timeout_s:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self._lock:
            state = self.state
            if state == CircuitState.OPEN:
                retry_after = self.recovery_timeout_s - (self._clock() - self._opened_at)
                raise CircuitBreakerOpen(self.name, max(retry_after, 1.0))
            if state == CircuitState.HALF_OPEN:
                if self._probes >= self.half_open_max:
                    raise CircuitBreakerOpen(self.name, 1.0)
                self._state = CircuitState.HALF_OPEN
                self._probes += 1

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            await self._record_failure(exc)
            raise
        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("circuit_closed", name=self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._probes = 0

    async def _record_failure(self, exc: Exception) -> None:
        async with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._trip()
                logger.warning("circuit_reopened", name=self.name, error=str(exc))
            elif self._consecutive_failures >= self.failure_threshold:
                self._trip()
                logger.warning(
                    "circuit_opened",
                    name=self.name,
                    failures=self._consecutive_failures,
                    error=str(exc),
                )

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probes = 0
