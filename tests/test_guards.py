import pytest
from fastapi import HTTPException
from starlette.requests import Request

from app.security.guards import SlidingWindowLimiter, caller_key, enforce_same_origin


def _request(headers=None, client=("10.0.0.1", 5000)):
    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "path": "/api/expansion/pipeline/execute",
        "query_string": b"",
        "server": ("testserver", 80),
        "client": client,
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
    }
    return Request(scope)


def test_limiter_window_and_retry_after():
    now = [100.0]
    limiter = SlidingWindowLimiter(clock=lambda: now[0])

    assert limiter.hit("k", limit=2, window_seconds=60) == 1
    assert limiter.hit("k", limit=2, window_seconds=60) == 0
    with pytest.raises(HTTPException) as excinfo:
        limiter.hit("k", limit=2, window_seconds=60)
    assert excinfo.value.status_code == 429
    assert excinfo.value.headers["Retry-After"] == "60"

    now[0] = 161.0
    assert limiter.hit("k", limit=2, window_seconds=60) == 1
    assert limiter.hit("other", limit=2, window_seconds=60) == 1


def test_limiter_forgets_idle_callers():
    now = [0.0]
    limiter = SlidingWindowLimiter(clock=lambda: now[0])

    for index in range(50):
        limiter.hit(f"ip:10.0.0.{index}", limit=5, window_seconds=60)
    limiter.hit("slow", limit=5, window_seconds=600)
    assert limiter.tracked_keys() == 51

    now[0] = 120.0
    limiter.hit("ip:10.0.0.200", limit=5, window_seconds=60)

    assert limiter.tracked_keys() == 2
    with pytest.raises(HTTPException):
        for _ in range(5):
            limiter.hit("slow", limit=5, window_seconds=600)


def test_caller_key_prefers_token_then_forwarded_ip():
    with_token = caller_key(_request({"Authorization": "Bearer abc"}))
    same_token_other_ip = caller_key(_request({"Authorization": "Bearer abc"}, client=("10.0.0.2", 1)))

    assert with_token.startswith("token:")
    assert with_token == same_token_other_ip
    assert caller_key(_request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})) == "ip:203.0.113.9"
    assert caller_key(_request()) == "ip:10.0.0.1"


def test_same_origin_check():
    enforce_same_origin(_request())
    enforce_same_origin(_request({"Origin": "http://testserver/", "Host": "testserver"}))
    with pytest.raises(HTTPException) as excinfo:
        enforce_same_origin(_request({"Origin": "https://evil.example", "Host": "testserver"}))
    assert excinfo.value.status_code == 403
