"""Per-operation timeouts and jittered exponential retries for AI calls."""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

import httpx
import openai
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from app.config.ai_settings import (
    AI_RETRY_BASE_DELAY,
    AI_RETRY_JITTER,
    AI_RETRY_MAX_ATTEMPTS,
    AI_RETRY_MAX_DELAY,
    OPERATION_TIMEOUTS,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_DEFAULT_DELAY = 5.0
RETRYABLE_STATUSES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})


class OperationTimeoutError(RuntimeError):
    """Raised when a single attempt exceeds its operation timeout."""


class OperationCancelledError(RuntimeError):
    """Raised when an in-flight operation was cancelled on request."""


@dataclass
class RetryPolicy:
    max_attempts: int = AI_RETRY_MAX_ATTEMPTS
    base_delay: float = AI_RETRY_BASE_DELAY
    max_delay: float = AI_RETRY_MAX_DELAY
    jitter: float = AI_RETRY_JITTER
    retryable_statuses: FrozenSet[int] = RETRYABLE_STATUSES


@dataclass
class OperationResult:
    success: bool
    operation_id: str
    data: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    duration_ms: float = 0.0
    attempts: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "operation_id": self.operation_id,
            "error": str(self.error) if self.error else None,
            "timed_out": self.timed_out,
            "duration_ms": round(self.duration_ms, 2),
            "attempts": self.attempts,
        }


def error_status(exc: Optional[BaseException]) -> Optional[int]:
    """Best effort extraction of an HTTP status code from an exception."""

    if exc is None:
        return None
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def retry_after_seconds(exc: Optional[BaseException]) -> Optional[float]:
    """Read the provider's Retry-After hint (seconds) if one was sent."""

    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return max(0.0, float(raw_ms) / 1000)
        except ValueError:
            pass
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def is_retryable(exc: BaseException, policy: Optional[RetryPolicy] = None) -> bool:
    policy = policy or RetryPolicy()
    if isinstance(exc, (OperationTimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError)):
        return True
    if isinstance(exc, openai.RateLimitError):
        return True
    status = error_status(exc)
    return status is not None and status in policy.retryable_statuses


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    exc: Optional[BaseException] = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before the next attempt; ``attempt`` is the one that just failed."""

    hint = retry_after_seconds(exc)
    if hint is not None:
        return min(hint, policy.max_delay)
    if error_status(exc) == 429:
        return min(RATE_LIMIT_DEFAULT_DELAY, policy.max_delay)
    exponential = policy.base_delay * (2 ** (attempt - 1))
    return min(exponential + exponential * policy.jitter * rand(), policy.max_delay)


class TimeoutRetryService:
    """Wrap async operations with a timeout per attempt and tenacity retries."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        timeouts: Optional[Dict[str, float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.timeouts = dict(OPERATION_TIMEOUTS if timeouts is None else timeouts)
        self._sleep = sleep
        self._active: Dict[str, asyncio.Task] = {}
        self._cancelled: set = set()

    def timeout_for(self, operation_type: str) -> float:
        return self.timeouts.get(operation_type, self.timeouts.get("default", 30.0))

    def _wait(self, policy: RetryPolicy) -> Callable[[RetryCallState], float]:
        def _compute(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            return compute_delay(retry_state.attempt_number, policy, exc)

        return _compute

    @staticmethod
    def _log_retry(operation_type: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "%s attempt %d failed (%s); retrying in %.2fs",
                operation_type,
                retry_state.attempt_number,
                exc,
                delay,
            )

        return _before_sleep

    async def execute(
        self,
        operation_type: str,
        operation: Callable[[], Awaitable[Any]],
        *,
        operation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> OperationResult:
        """Run ``operation`` with retries and return an :class:`OperationResult`."""

        policy = policy or self.policy
        limit = self.timeout_for(operation_type) if timeout is None else timeout
        op_id = operation_id or f"{operation_type}-{uuid.uuid4().hex[:12]}"
        attempts = 0

        async def _attempt() -> Any:
            nonlocal attempts
            attempts += 1
            try:
                return await asyncio.wait_for(operation(), limit)
            except asyncio.TimeoutError as exc:
                raise OperationTimeoutError(f"{operation_type} exceeded {limit:.0f}s") from exc

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, policy.max_attempts)),
            wait=self._wait(policy),
            retry=retry_if_exception(lambda exc: is_retryable(exc, policy)),
            before_sleep=self._log_retry(operation_type),
            sleep=self._sleep,
            reraise=True,
        )

        started = time.monotonic()
        task = asyncio.ensure_future(retrying(_attempt))
        self._active[op_id] = task
        try:
            data = await task
        except asyncio.CancelledError:
            if op_id not in self._cancelled:
                raise
            self._cancelled.discard(op_id)
            return OperationResult(
                success=False,
                operation_id=op_id,
                error=OperationCancelledError(f"{op_id} cancelled"),
                duration_ms=(time.monotonic() - started) * 1000,
                attempts=attempts,
            )
        except Exception as exc:
            logger.warning("%s failed after %d attempt(s): %s", operation_type, attempts, exc)
            return OperationResult(
                success=False,
                operation_id=op_id,
                error=exc,
                timed_out=isinstance(exc, OperationTimeoutError),
                duration_ms=(time.monotonic() - started) * 1000,
                attempts=attempts,
            )
        finally:
            self._active.pop(op_id, None)

        return OperationResult(
            success=True,
            operation_id=op_id,
            data=data,
            duration_ms=(time.monotonic() - started) * 1000,
            attempts=attempts,
        )

    async def execute_or_raise(self, operation_type: str, operation: Callable[[], Awaitable[Any]], **kwargs: Any) -> Any:
        result = await self.execute(operation_type, operation, **kwargs)
        if not result.success:
            raise result.error  # type: ignore[misc]
        return result.data

    def cancel(self, operation_id: str) -> bool:
        task = self._active.get(operation_id)
        if task is None or task.done():
            return False
        self._cancelled.add(operation_id)
        task.cancel()
        return True

    def active_operations(self) -> List[str]:
        return [op_id for op_id, task in self._active.items() if not task.done()]


__all__ = [
    "OperationCancelledError",
    "OperationResult",
    "OperationTimeoutError",
    "RetryPolicy",
    "TimeoutRetryService",
    "compute_delay",
    "error_status",
    "is_retryable",
    "retry_after_seconds",
]
