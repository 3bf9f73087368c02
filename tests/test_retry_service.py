import asyncio
import types

import httpx
import openai
import pytest

from app.services.retry_service import (
    OperationCancelledError,
    OperationTimeoutError,
    RetryPolicy,
    TimeoutRetryService,
    compute_delay,
    is_retryable,
    retry_after_seconds,
)


class StatusError(Exception):
    def __init__(self, status, headers=None):
        super().__init__(f"status {status}")
        self.status_code = status
        self.response = types.SimpleNamespace(status_code=status, headers=headers or {})


def _openai_rate_limit(headers=None):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(429, request=request, headers=headers or {})
    return openai.RateLimitError("rate limited", response=response, body=None)


def _service(sleeps, **policy):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    options = {"max_attempts": 3, "base_delay": 1.0, "max_delay": 30.0, "jitter": 0.1}
    options.update(policy)
    return TimeoutRetryService(RetryPolicy(**options), sleep=fake_sleep)


def test_exponential_delay_with_jitter_and_cap():
    policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.1)

    assert compute_delay(1, policy, rand=lambda: 0.5) == pytest.approx(1.05)
    assert compute_delay(3, policy, rand=lambda: 0.5) == pytest.approx(4.2)
    assert compute_delay(10, policy, rand=lambda: 1.0) == 30.0


def test_retry_after_header_is_honoured_and_capped():
    policy = RetryPolicy(max_delay=30.0)

    assert retry_after_seconds(StatusError(429, {"retry-after": "2"})) == 2.0
    assert compute_delay(1, policy, StatusError(429, {"retry-after": "2"})) == 2.0
    assert compute_delay(1, policy, StatusError(429, {"retry-after": "120"})) == 30.0
    assert compute_delay(1, policy, StatusError(429)) == 5.0
    assert compute_delay(1, policy, _openai_rate_limit({"retry-after": "3"})) == 3.0


def test_retryable_classification():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    assert is_retryable(_openai_rate_limit())
    assert is_retryable(StatusError(503))
    assert is_retryable(OperationTimeoutError("slow"))
    assert is_retryable(openai.APIConnectionError(request=request))
    assert is_retryable(httpx.ConnectError("boom"))
    assert not is_retryable(StatusError(400))
    assert not is_retryable(ValueError("bad json"))


def test_transient_errors_are_retried_until_success():
    sleeps = []
    service = _service(sleeps)
    calls = {"count": 0}

    async def flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise StatusError(503)
        return "payload"

    result = asyncio.run(service.execute("market_analysis", flaky))

    assert result.success is True
    assert result.data == "payload"
    assert result.attempts == 3
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.1
    assert 2.0 <= sleeps[1] <= 2.2


def test_non_retryable_error_fails_fast():
    sleeps = []
    service = _service(sleeps)

    async def broken():
        raise ValueError("schema mismatch")

    result = asyncio.run(service.execute("rationale", broken))

    assert result.success is False
    assert result.attempts == 1
    assert isinstance(result.error, ValueError)
    assert sleeps == []


def test_timeouts_are_reported_after_all_attempts():
    sleeps = []
    service = _service(sleeps, max_attempts=2)

    async def slow():
        await asyncio.sleep(1)

    result = asyncio.run(service.execute("rationale", slow, timeout=0.01))

    assert result.success is False
    assert result.timed_out is True
    assert result.attempts == 2
    assert isinstance(result.error, OperationTimeoutError)


def test_timeout_lookup_per_operation_type():
    service = TimeoutRetryService(timeouts={"rationale": 25.0, "market_analysis": 90.0, "default": 30.0})

    assert service.timeout_for("rationale") == 25.0
    assert service.timeout_for("market_analysis") == 90.0
    assert service.timeout_for("unknown") == 30.0


def test_cancel_in_flight_operation():
    service = _service([])

    async def scenario():
        never = asyncio.Event()

        async def waits_forever():
            await never.wait()

        task = asyncio.create_task(service.execute("default", waits_forever, operation_id="op-1", timeout=5))
        await asyncio.sleep(0.01)
        assert service.active_operations() == ["op-1"]
        assert service.cancel("op-1") is True
        return await task

    result = asyncio.run(scenario())

    assert result.success is False
    assert isinstance(result.error, OperationCancelledError)
    assert service.active_operations() == []
    assert service.cancel("op-1") is False


def test_execute_or_raise_propagates_last_error():
    service = _service([])

    async def broken():
        raise StatusError(400)

    with pytest.raises(StatusError):
        asyncio.run(service.execute_or_raise("default", broken))
