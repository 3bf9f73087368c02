"""Stable cache keys and a TTL-aware LRU cache for AI results."""

from __future__ import annotations

import hashlib
import json
import math
import re
import threading
import time
from collections import Counter, OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Sequence, Tuple

from app.config.ai_settings import AI_CACHE_TTL_DAYS, MAX_CACHE_ENTRIES

NULL_SENTINEL = "NA"
UNDEFINED_SENTINEL = "UNDEF"
ZERO_SENTINEL = "0"
NULL_LIKE_STRINGS = {"", "unknown", "not available", "n/a"}

MAX_KEY_LENGTH = 500
KEY_PATTERN = re.compile(r"^[a-zA-Z0-9|:=&\-_.\[\]{}]+$")
UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_.]")

MAX_HISTORY = 10000
TRIMMED_HISTORY = 5000

_MISSING = object()


def _short_hash(payload: Any) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(serialized.encode("utf-8")).hexdigest()[:8]


def _format_number(value: float) -> str:
    if value == 0:
        return ZERO_SENTINEL
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or ZERO_SENTINEL


def format_value(value: Any = _MISSING) -> str:
    """Render a context value with explicit sentinels for empty states."""

    if value is _MISSING:
        return UNDEFINED_SENTINEL
    if value is None:
        return NULL_SENTINEL
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return NULL_SENTINEL
        return _format_number(float(value))
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lower() in NULL_LIKE_STRINGS:
            return NULL_SENTINEL
        return UNSAFE_CHARS.sub("_", stripped)
    if isinstance(value, (list, tuple, set)):
        return f"[{len(value)}]"
    if isinstance(value, dict):
        return "{" + _short_hash(value) + "}"
    return UNSAFE_CHARS.sub("_", str(value))


def context_part(context: Dict[str, Any], expected_keys: Sequence[str] = ()) -> str:
    """Render ``k=v`` pairs sorted by key; expected but absent keys become UNDEF."""

    rendered = {str(key): format_value(value) for key, value in context.items()}
    for key in expected_keys:
        rendered.setdefault(key, format_value())
    pairs = sorted(f"{UNSAFE_CHARS.sub('_', key)}={value}" for key, value in rendered.items())
    return "&".join(pairs)


def bounds_part(bounds: Dict[str, float]) -> str:
    values = [f"{float(bounds.get(side) or 0.0):.6f}" for side in ("north", "south", "east", "west")]
    return _short_hash(values)


def shannon_entropy(text: str) -> float:
    if not text:
        return 0.0
    counts = Counter(text)
    total = len(text)
    return -sum((count / total) * math.log2(count / total) for count in counts.values())


def validate_cache_key(key: str) -> bool:
    return isinstance(key, str) and 0 < len(key) <= MAX_KEY_LENGTH and bool(KEY_PATTERN.match(key))


def assess_collision_risk(key: str) -> Dict[str, Any]:
    """Grade how likely a key is to collide with unrelated contexts."""

    length = len(key)
    unique_parts = len(set(part for part in key.split("|") if part))
    entropy = shannon_entropy(key)
    if length < 20 or unique_parts < 2 or entropy < 3:
        risk = "high"
    elif length < 50 or unique_parts < 4 or entropy < 4:
        risk = "medium"
    else:
        risk = "low"
    return {"risk": risk, "length": length, "unique_parts": unique_parts, "entropy": round(entropy, 3)}


class CacheKeyManager:
    """Build keys from context objects and track collisions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._history: "OrderedDict[str, str]" = OrderedDict()
        self.collisions = 0
        self.generated = 0

    def build_key(
        self,
        prefix: str,
        context: Dict[str, Any],
        *,
        bounds: Optional[Dict[str, float]] = None,
        version: Optional[str] = None,
        model_config: Optional[Dict[str, Any]] = None,
        include_timestamp: bool = False,
        expected_keys: Sequence[str] = (),
    ) -> str:
        parts = [UNSAFE_CHARS.sub("_", prefix), f"ctx:{context_part(context, expected_keys) or NULL_SENTINEL}"]
        if bounds:
            parts.append(f"bounds:{bounds_part(bounds)}")
        if version:
            parts.append(f"ver:{UNSAFE_CHARS.sub('_', version)}")
        if model_config:
            parts.append(f"model:{_short_hash(dict(sorted(model_config.items())))}")
        if include_timestamp:
            parts.append(f"ts:{int(time.time())}")
        key = "|".join(parts)
        if not validate_cache_key(key):
            digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
            key = f"{parts[0][:100]}|h:{digest}"
        self._record(key, context)
        return key

    def _record(self, key: str, context: Dict[str, Any]) -> None:
        fingerprint = _short_hash(context)
        with self._lock:
            self.generated += 1
            previous = self._history.get(key)
            if previous is not None and previous != fingerprint:
                self.collisions += 1
            self._history[key] = fingerprint
            self._history.move_to_end(key)
            if len(self._history) > MAX_HISTORY:
                while len(self._history) > TRIMMED_HISTORY:
                    self._history.popitem(last=False)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"generated": self.generated, "tracked": len(self._history), "collisions": self.collisions}


class TTLCache:
    """OrderedDict backed LRU where every entry also carries an expiry."""

    def __init__(
        self,
        *,
        max_entries: int = MAX_CACHE_ENTRIES,
        ttl_seconds: float = AI_CACHE_TTL_DAYS * 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / lookups) if lookups else 0.0,
        }


__all__ = [
    "CacheKeyManager",
    "NULL_SENTINEL",
    "TTLCache",
    "UNDEFINED_SENTINEL",
    "ZERO_SENTINEL",
    "assess_collision_risk",
    "context_part",
    "format_value",
    "shannon_entropy",
    "validate_cache_key",
]
