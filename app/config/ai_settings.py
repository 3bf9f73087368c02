"""Environment-driven settings for the AI orchestration layer."""

from __future__ import annotations

import os
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


AI_MODEL_DEFAULT = os.getenv("AI_MODEL_DEFAULT", "gpt-5-mini")
AI_MODEL_FAST = os.getenv("AI_MODEL_FAST", "gpt-5-nano")
AI_MODEL_ESCALATION = os.getenv("AI_MODEL_ESCALATION", "gpt-5.2")

AI_MAX_CONCURRENT = _env_int("AI_MAX_CONCURRENT", 4)
AI_RATE_LIMIT_PER_MINUTE = _env_int("AI_RATE_LIMIT_PER_MINUTE", 50)
AI_QUEUE_TIMEOUT_SECONDS = _env_float("AI_QUEUE_TIMEOUT_SECONDS", 300.0)
AI_BATCH_SIZE = _env_int("AI_BATCH_SIZE", 10)

AI_RETRY_MAX_ATTEMPTS = _env_int("AI_RETRY_MAX_ATTEMPTS", 3)
AI_RETRY_BASE_DELAY = _env_float("AI_RETRY_BASE_DELAY", 1.0)
AI_RETRY_MAX_DELAY = _env_float("AI_RETRY_MAX_DELAY", 30.0)
AI_RETRY_JITTER = _env_float("AI_RETRY_JITTER", 0.1)

AI_CANDIDATE_PERCENTAGE = _env_float("AI_CANDIDATE_PERCENTAGE", 20.0)
AI_MAX_CANDIDATES = _env_int("AI_MAX_CANDIDATES", 60)

AI_COST_ALERT_USD = _env_float("AI_COST_ALERT_USD", 10.0)
AI_COST_CRITICAL_USD = _env_float("AI_COST_CRITICAL_USD", 50.0)

AI_CACHE_TTL_DAYS = _env_float("AI_CACHE_TTL_DAYS", 7.0)
MAX_CACHE_ENTRIES = _env_int("MAX_CACHE_ENTRIES", 256)

AI_RATIONALE_MAX_TOKENS = _env_int("AI_RATIONALE_MAX_TOKENS", 250)
AI_RATIONALE_CACHE_TTL_DAYS = _env_float("AI_RATIONALE_CACHE_TTL_DAYS", 90.0)
AI_MAX_AI_RATIONALES = _env_int("AI_MAX_AI_RATIONALES", 20)

AI_BASE_SEED = _env_optional_int("AI_BASE_SEED")
AI_SEED_ROTATION_HOURS = _env_optional_int("AI_SEED_ROTATION_HOURS")

AI_PERSIST_USAGE = _env_bool("AI_PERSIST_USAGE", True)

OPERATION_TIMEOUTS: Dict[str, float] = {
    "rationale": _env_float("AI_TIMEOUT_RATIONALE", 25.0),
    "market_analysis": _env_float("AI_TIMEOUT_MARKET_ANALYSIS", 90.0),
    "location_discovery": _env_float("AI_TIMEOUT_LOCATION_DISCOVERY", 60.0),
    "strategic_scoring": _env_float("AI_TIMEOUT_STRATEGIC_SCORING", 45.0),
    "viability_validation": _env_float("AI_TIMEOUT_VIABILITY", 30.0),
    "default": _env_float("AI_TIMEOUT_DEFAULT", 30.0),
}

# USD per 1M tokens (input, output).
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-5-mini": {"input": 0.25, "output": 2.00},
    "gpt-5-nano": {"input": 0.05, "output": 0.40},
    "gpt-5.2": {"input": 2.50, "output": 10.00},
}


__all__ = [
    "AI_MODEL_DEFAULT",
    "AI_MODEL_FAST",
    "AI_MODEL_ESCALATION",
    "AI_MAX_CONCURRENT",
    "AI_RATE_LIMIT_PER_MINUTE",
    "AI_QUEUE_TIMEOUT_SECONDS",
    "AI_BATCH_SIZE",
    "AI_RETRY_MAX_ATTEMPTS",
    "AI_RETRY_BASE_DELAY",
    "AI_RETRY_MAX_DELAY",
    "AI_RETRY_JITTER",
    "AI_CANDIDATE_PERCENTAGE",
    "AI_MAX_CANDIDATES",
    "AI_COST_ALERT_USD",
    "AI_COST_CRITICAL_USD",
    "AI_CACHE_TTL_DAYS",
    "MAX_CACHE_ENTRIES",
    "AI_RATIONALE_MAX_TOKENS",
    "AI_RATIONALE_CACHE_TTL_DAYS",
    "AI_MAX_AI_RATIONALES",
    "AI_BASE_SEED",
    "AI_SEED_ROTATION_HOURS",
    "AI_PERSIST_USAGE",
    "OPERATION_TIMEOUTS",
    "MODEL_PRICING",
]
