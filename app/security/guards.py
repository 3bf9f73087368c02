"""Request guards for the expansion API: origin checks and per-caller throttling."""

from __future__ import annotations

import hashlib
import math
import os
import threading
import time
from collections import defaultdict, deque
from typing import Callable, DefaultDict, Deque, Dict

from fastapi import HTTPException, Request

TRUSTED_ORIGINS = frozenset(
    entry.strip().rstrip("/").lower() for entry in os.getenv("TRUSTED_ORIGINS", "").split(",") if entry.strip()
)


class SlidingWindowLimiter:
    """Count hits per key over a trailing window of ``window_seconds``."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: DefaultDict[str, Deque[float]] = defaultdict(deque)
        self._windows: Dict[str, float] = {}

    def hit(self, key: str, *, limit: int, window_seconds: float) -> int:
        """Record a hit and return the remaining budget.

        Raises :class:`HTTPException` (429, with ``Retry-After``) once ``limit``
        hits already fall inside the window.
        """

        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            self._windows[key] = window_seconds
            hits = self._hits[key]
            if len(hits) >= limit:
                wait = max(1, math.ceil(window_seconds - (now - hits[0])))
                raise HTTPException(
                    status_code=429,
                    detail="Trop d'analyses lancées. Réessayez plus tard.",
                    headers={"Retry-After": str(wait)},
                )
            hits.append(now)
            return limit - len(hits)

    def _evict_expired(self, now: float) -> None:
        for key in list(self._windows):
            window_seconds = self._windows[key]
            hits = self._hits[key]
            while hits and now - hits[0] > window_seconds:
                hits.popleft()
            if not hits:
                del self._hits[key]
                del self._windows[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()
            self._windows.clear()


_limiter = SlidingWindowLimiter()


def get_client_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client and request.client.host else "unknown"


def caller_key(request: Request) -> str:
    """Authenticated callers are throttled per token, anonymous ones per IP."""

    authorization = request.headers.get("authorization")
    if authorization:
        return "token:" + hashlib.sha256(authorization.strip().encode("utf-8")).hexdigest()[:16]
    return "ip:" + get_client_ip(request)


def enforce_same_origin(request: Request) -> None:
    """Reject browser calls coming from an untrusted origin."""

    origin = request.headers.get("origin")
    if not origin:
        return
    origin = origin.rstrip("/").lower()
    host = request.headers.get("host")
    own_origin = f"{request.url.scheme or 'http'}://{host}".lower() if host else None
    if origin in TRUSTED_ORIGINS or origin == own_origin:
        return
    raise HTTPException(status_code=403, detail="Origine de la requête non autorisée.")


def rate_limit_request(request: Request, *, scope: str, limit: int, window_seconds: int) -> int:
    return _limiter.hit(f"{scope}:{caller_key(request)}", limit=limit, window_seconds=window_seconds)


def reset_rate_limits() -> None:
    _limiter.clear()


__all__ = [
    "SlidingWindowLimiter",
    "caller_key",
    "enforce_same_origin",
    "get_client_ip",
    "rate_limit_request",
    "reset_rate_limits",
]
