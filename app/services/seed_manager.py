"""Deterministic seeds derived from request content.

Identical inputs must reproduce identical model outputs, so sampling is driven
by a seed computed from the request context instead of a temperature. The seed
is also embedded in cache keys so cached results stay tied to it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import random
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.config.ai_settings import AI_BASE_SEED, AI_SEED_ROTATION_HOURS, MAX_CACHE_ENTRIES

logger = logging.getLogger(__name__)

MIN_SEED = 1
MAX_SEED = 2147483647
SEED_KEY_PATTERN = re.compile(r"\|seed-(\d+)(?:\||$)")

SOURCE_FIXED = "fixed"
SOURCE_ROTATED = "rotated"
SOURCE_CONTEXT = "context"
SOURCE_GENERATED = "generated"


@dataclass(frozen=True)
class SeedResult:
    seed: int
    source: str
    context_hash: str


def _normalize_value(value: Any) -> Any:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return f"{value:.6f}"
    if isinstance(value, dict):
        return {str(key): _normalize_value(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item) for item in value]
    return value


def normalize_context(context: Any) -> str:
    """Serialize a context into a canonical JSON string."""

    return json.dumps(_normalize_value(context), sort_keys=True, separators=(",", ":"), default=str)


def hash_context(context: Any) -> str:
    return hashlib.md5(normalize_context(context).encode("utf-8")).hexdigest()


def _seed_from_hex(digest: str) -> int:
    return int(digest[:8], 16) % (MAX_SEED - MIN_SEED + 1) + MIN_SEED


def seed_from_context(context: Any) -> int:
    """Map a context to a stable seed in ``[MIN_SEED, MAX_SEED]``."""

    return _seed_from_hex(hash_context(context))


def validate_seed(seed: Any) -> bool:
    return isinstance(seed, int) and not isinstance(seed, bool) and MIN_SEED <= seed <= MAX_SEED


class SeedManager:
    """Resolve the seed for a request and memoise it per context."""

    def __init__(
        self,
        *,
        base_seed: Optional[int] = AI_BASE_SEED,
        rotation_hours: Optional[int] = AI_SEED_ROTATION_HOURS,
        max_entries: int = MAX_CACHE_ENTRIES,
    ) -> None:
        if base_seed is not None and not validate_seed(base_seed):
            raise ValueError(f"Base seed {base_seed} is outside [{MIN_SEED}, {MAX_SEED}]")
        self.base_seed = base_seed
        self.rotation_hours = rotation_hours if rotation_hours and rotation_hours > 0 else None
        self.max_entries = max_entries
        self._cache: "OrderedDict[str, SeedResult]" = OrderedDict()

    def _rotation_period(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return math.floor(current / 3600 / self.rotation_hours)

    def get_seed(self, context: Optional[Any] = None, *, now: Optional[float] = None) -> SeedResult:
        context_hash = hash_context(context) if context is not None else ""

        if self.base_seed is not None:
            return SeedResult(self.base_seed, SOURCE_FIXED, context_hash)

        if self.rotation_hours:
            period = self._rotation_period(now)
            digest = hashlib.md5(f"rotation-{period}|{context_hash}".encode("utf-8")).hexdigest()
            return SeedResult(_seed_from_hex(digest), SOURCE_ROTATED, context_hash)

        if context is None:
            seed = random.randint(MIN_SEED, MAX_SEED)
            logger.debug("Generated non-deterministic seed %s", seed)
            return SeedResult(seed, SOURCE_GENERATED, "")

        cached = self._cache.get(context_hash)
        if cached is not None:
            self._cache.move_to_end(context_hash)
            return cached
        result = SeedResult(_seed_from_hex(context_hash), SOURCE_CONTEXT, context_hash)
        self._cache[context_hash] = result
        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        return result

    def clear(self) -> None:
        self._cache.clear()


def create_cache_key_with_seed(base_key: str, result: SeedResult) -> str:
    return f"{base_key}|seed-{result.seed}|src-{result.source}|ctx-{result.context_hash[:8] or 'none'}"


def extract_seed_from_cache_key(cache_key: str) -> Optional[int]:
    match = SEED_KEY_PATTERN.search(cache_key or "")
    if not match:
        return None
    seed = int(match.group(1))
    return seed if validate_seed(seed) else None


def cleanup_temperature_parameters(params: Dict[str, Any]) -> Dict[str, Any]:
    """Return request params without sampling temperature."""

    cleaned = dict(params)
    if cleaned.pop("temperature", None) is not None:
        logger.debug("Dropped temperature parameter in favour of deterministic seed")
    return cleaned


__all__ = [
    "MAX_SEED",
    "MIN_SEED",
    "SeedManager",
    "SeedResult",
    "cleanup_temperature_parameters",
    "create_cache_key_with_seed",
    "extract_seed_from_cache_key",
    "hash_context",
    "normalize_context",
    "seed_from_context",
    "validate_seed",
]
