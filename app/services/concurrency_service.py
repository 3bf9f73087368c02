"""Bounded, rate-limited and priority-ordered execution of AI calls."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple, TypeVar

from app.config.ai_settings import (
    AI_BATCH_SIZE,
    AI_MAX_CONCURRENT,
    AI_QUEUE_TIMEOUT_SECONDS,
    AI_RATE_LIMIT_PER_MINUTE,
)

logger = logging.getLogger(__name__)
T = TypeVar("T")
R = TypeVar("R")

RATE_WINDOW_SECONDS = 60.0
MAX_COMPLETED_HISTORY = 1000
TRIMMED_COMPLETED_HISTORY = 500


class QueueTimeoutError(RuntimeError):
    """Raised when a queued operation never got a slot in time."""


class ConcurrencyStoppedError(RuntimeError):
    """Raised for operations submitted to, or queued on, a stopped manager."""


class ConcurrencyManager:
    """Run coroutines under a concurrency ceiling and a per-minute budget.

    Waiting operations are released highest priority first and FIFO within a
    priority. A slot is granted only when both a concurrency slot and a rate
    slot are free.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = AI_MAX_CONCURRENT,
        rate_limit_per_minute: int = AI_RATE_LIMIT_PER_MINUTE,
        queue_timeout: float = AI_QUEUE_TIMEOUT_SECONDS,
        batch_size: int = AI_BATCH_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_concurrent = max(1, max_concurrent)
        self.rate_limit_per_minute = max(1, rate_limit_per_minute)
        self.queue_timeout = queue_timeout
        self.batch_size = max(1, batch_size)
        self._clock = clock
        self._active = 0
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._sequence = itertools.count()
        self._rate_window: Deque[float] = deque()
        self._completed: Deque[Tuple[float, float]] = deque()
        self._completed_count = 0
        self._failed_count = 0
        self._stopped = False
        self._wakeup: Optional[asyncio.TimerHandle] = None

    def _prune_rate_window(self, now: float) -> None:
        while self._rate_window and now - self._rate_window[0] >= RATE_WINDOW_SECONDS:
            self._rate_window.popleft()

    def _has_capacity(self) -> bool:
        self._prune_rate_window(self._clock())
        return self._active < self.max_concurrent and len(self._rate_window) < self.rate_limit_per_minute

    def _claim_slot(self) -> None:
        self._active += 1
        self._rate_window.append(self._clock())

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._dispatch()

    def _dispatch(self) -> None:
        while self._waiters and self._has_capacity():
            _, _, future = heapq.heappop(self._waiters)
            if future.done():
                continue
            self._claim_slot()
            future.set_result(None)
        if self._waiters and self._active < self.max_concurrent and self._rate_window:
            self._schedule_wakeup()

    def _schedule_wakeup(self) -> None:
        if self._wakeup is not None:
            return
        delay = max(0.0, RATE_WINDOW_SECONDS - (self._clock() - self._rate_window[0]))
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_later(delay, self._on_wakeup)

    async def _acquire(self, priority: int, timeout: float) -> None:
        if self._stopped:
            raise ConcurrencyStoppedError("Concurrency manager is stopped")
        if not self._waiters and self._has_capacity():
            self._claim_slot()
            return

        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (-priority, next(self._sequence), future))
        self._dispatch()
        try:
            await asyncio.wait({future}, timeout=timeout)
        except asyncio.CancelledError:
            if self._granted(future):
                self._release()
            else:
                future.cancel()
            raise
        # A slot granted on the same loop tick as the timeout still counts.
        if future.done():
            future.result()
            return
        future.cancel()
        raise QueueTimeoutError(f"Operation waited more than {timeout:.0f}s for a slot")

    @staticmethod
    def _granted(future: asyncio.Future) -> bool:
        return future.done() and not future.cancelled() and future.exception() is None

    def _release(self) -> None:
        self._active = max(0, self._active - 1)
        self._dispatch()

    def _record(self, started: float, success: bool) -> None:
        finished = self._clock()
        if success:
            self._completed_count += 1
        else:
            self._failed_count += 1
        self._completed.append((finished, (finished - started) * 1000))
        if len(self._completed) > MAX_COMPLETED_HISTORY:
            while len(self._completed) > TRIMMED_COMPLETED_HISTORY:
                self._completed.popleft()

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        priority: int = 0,
        timeout: Optional[float] = None,
        label: Optional[str] = None,
    ) -> T:
        """Wait for a slot, then await ``operation()``."""

        await self._acquire(priority, self.queue_timeout if timeout is None else timeout)
        started = self._clock()
        try:
            result = await operation()
        except BaseException:
            self._record(started, success=False)
            logger.debug("Concurrent operation %s failed", label or "anonymous")
            raise
        else:
            self._record(started, success=True)
            return result
        finally:
            self._release()

    async def process_in_parallel(
        self,
        items: Sequence[T],
        handler: Callable[[T], Awaitable[R]],
        *,
        priority: int = 0,
        batch_size: Optional[int] = None,
    ) -> List[Any]:
        """Process items batch by batch; results keep input order.

        A failed item yields its exception object in place of a result.
        """

        size = max(1, batch_size or self.batch_size)
        results: List[Any] = []
        for start in range(0, len(items), size):
            batch = items[start : start + size]
            batch_results = await asyncio.gather(
                *(self.run(lambda item=item: handler(item), priority=priority) for item in batch),
                return_exceptions=True,
            )
            results.extend(batch_results)
        return results

    def stop(self) -> None:
        """Reject new work and fail every queued operation."""

        self._stopped = True
        waiters, self._waiters = self._waiters, []
        for _, _, future in waiters:
            if not future.done():
                future.set_exception(ConcurrencyStoppedError("Concurrency manager stopped"))
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        logger.info("Concurrency manager stopped; %d queued operations cancelled", len(waiters))

    def start(self) -> None:
        self._stopped = False

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        self._prune_rate_window(now)
        durations = [duration for _, duration in self._completed]
        recent = sum(1 for finished, _ in self._completed if now - finished <= RATE_WINDOW_SECONDS)
        queued = sum(1 for _, _, future in self._waiters if not future.done())
        return {
            "active": self._active,
            "queued": queued,
            "completed": self._completed_count,
            "failed": self._failed_count,
            "average_processing_ms": (sum(durations) / len(durations)) if durations else 0.0,
            "throughput_last_minute": recent,
            "rate_limit_remaining": max(0, self.rate_limit_per_minute - len(self._rate_window)),
            "stopped": self._stopped,
        }


_default_manager: Optional[ConcurrencyManager] = None


def get_concurrency_manager() -> ConcurrencyManager:
    """Return the process-wide manager shared by every AI service."""

    global _default_manager
    if _default_manager is None:
        _default_manager = ConcurrencyManager()
    return _default_manager


__all__ = [
    "ConcurrencyManager",
    "ConcurrencyStoppedError",
    "QueueTimeoutError",
    "get_concurrency_manager",
]
