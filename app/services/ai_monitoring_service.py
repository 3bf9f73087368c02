"""Token, latency and cost accounting for AI calls, with alerting."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from app.config.ai_settings import (
    AI_COST_ALERT_USD,
    AI_COST_CRITICAL_USD,
    AI_MODEL_DEFAULT,
    MODEL_PRICING,
)
from app.services.ai_output_parser import preview_text

logger = logging.getLogger(__name__)

MAX_RECORDS = 1000
TRIMMED_RECORDS = 500
INPUT_TOKEN_SHARE = 0.7
ERROR_RATE_WARNING = 0.10
ERROR_RATE_CRITICAL = 0.50


def model_pricing(model: Optional[str]) -> Dict[str, float]:
    if model and model in MODEL_PRICING:
        return MODEL_PRICING[model]
    # Dated snapshots such as "gpt-5-mini-2025-08-07" share the base price.
    for name in sorted(MODEL_PRICING, key=len, reverse=True):
        if model and model.startswith(name):
            return MODEL_PRICING[name]
    return MODEL_PRICING.get(AI_MODEL_DEFAULT) or next(iter(MODEL_PRICING.values()))


def normalize_usage(usage: Any) -> Dict[str, int]:
    """Return prompt/completion/total token counts from an SDK usage object."""

    if usage is None:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    if hasattr(usage, "model_dump"):
        usage = usage.model_dump()
    prompt = int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0)
    completion = int(usage.get("completion_tokens") or usage.get("output_tokens") or 0)
    total = int(usage.get("total_tokens") or (prompt + completion))
    if total and not (prompt or completion):
        prompt = round(total * INPUT_TOKEN_SHARE)
        completion = total - prompt
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total}


def estimate_cost_usd(model: Optional[str], usage: Dict[str, int]) -> float:
    pricing = model_pricing(model)
    prompt = usage.get("prompt_tokens", 0)
    completion = usage.get("completion_tokens", 0)
    if not (prompt or completion) and usage.get("total_tokens"):
        prompt = round(usage["total_tokens"] * INPUT_TOKEN_SHARE)
        completion = usage["total_tokens"] - prompt
    return (prompt * pricing["input"] + completion * pricing["output"]) / 1_000_000


class PerformanceMonitor:
    """Keep a bounded log of AI calls and aggregate it per operation type."""

    def __init__(
        self,
        *,
        cost_warning_usd: float = AI_COST_ALERT_USD,
        cost_critical_usd: float = AI_COST_CRITICAL_USD,
    ) -> None:
        self.cost_warning_usd = cost_warning_usd
        self.cost_critical_usd = cost_critical_usd
        self._records: Deque[Dict[str, Any]] = deque()
        self._lock = threading.Lock()
        self._totals = {"calls": 0, "errors": 0, "rate_limited": 0, "tokens": 0, "cost_usd": 0.0}
        self._by_operation: Dict[str, Dict[str, Any]] = {}

    def record(
        self,
        operation: str,
        model: Optional[str],
        duration_ms: float,
        usage: Any = None,
        *,
        success: bool = True,
        response_text: Optional[str] = None,
        error_status: Optional[int] = None,
    ) -> Dict[str, Any]:
        tokens = normalize_usage(usage)
        cost = estimate_cost_usd(model, tokens)
        entry = {
            "operation": operation,
            "model": model,
            "duration_ms": round(duration_ms, 2),
            "success": success,
            "error_status": error_status,
            "cost_usd": cost,
            "response_length": len(response_text or ""),
            "timestamp": time.time(),
            **tokens,
        }
        with self._lock:
            self._records.append(entry)
            if len(self._records) > MAX_RECORDS:
                while len(self._records) > TRIMMED_RECORDS:
                    self._records.popleft()
            self._totals["calls"] += 1
            self._totals["tokens"] += tokens["total_tokens"]
            self._totals["cost_usd"] += cost
            if not success:
                self._totals["errors"] += 1
            if error_status == 429:
                self._totals["rate_limited"] += 1
            bucket = self._by_operation.setdefault(
                operation,
                {"count": 0, "successes": 0, "total_ms": 0.0, "tokens": 0, "cost_usd": 0.0},
            )
            bucket["count"] += 1
            bucket["successes"] += 1 if success else 0
            bucket["total_ms"] += duration_ms
            bucket["tokens"] += tokens["total_tokens"]
            bucket["cost_usd"] += cost

        logger.info(
            "AI call op=%s model=%s ok=%s latency_ms=%.0f tokens=%d cost=$%.5f len=%d preview=%s",
            operation,
            model,
            success,
            duration_ms,
            tokens["total_tokens"],
            cost,
            entry["response_length"],
            preview_text(response_text),
        )
        return entry

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            calls = self._totals["calls"]
            operations = {
                name: {
                    "count": bucket["count"],
                    "success_rate": bucket["successes"] / bucket["count"] if bucket["count"] else 0.0,
                    "average_latency_ms": bucket["total_ms"] / bucket["count"] if bucket["count"] else 0.0,
                    "tokens": bucket["tokens"],
                    "cost_usd": round(bucket["cost_usd"], 6),
                }
                for name, bucket in self._by_operation.items()
            }
            return {
                "total_calls": calls,
                "total_errors": self._totals["errors"],
                "error_rate": self._totals["errors"] / calls if calls else 0.0,
                "rate_limited": self._totals["rate_limited"],
                "total_tokens": self._totals["tokens"],
                "total_cost_usd": round(self._totals["cost_usd"], 6),
                "operations": operations,
            }

    def alerts(self) -> List[Dict[str, str]]:
        summary = self.summary()
        alerts: List[Dict[str, str]] = []
        if summary["total_calls"] == 0:
            alerts.append({"type": "NO_API_CALLS", "severity": "INFO", "message": "No AI calls recorded yet."})
            return alerts

        error_rate = summary["error_rate"]
        if error_rate > ERROR_RATE_WARNING:
            alerts.append(
                {
                    "type": "HIGH_ERROR_RATE",
                    "severity": "CRITICAL" if error_rate > ERROR_RATE_CRITICAL else "WARNING",
                    "message": f"AI error rate is {error_rate:.0%}.",
                }
            )
        if summary["rate_limited"]:
            alerts.append(
                {
                    "type": "RATE_LIMIT",
                    "severity": "WARNING",
                    "message": f"{summary['rate_limited']} call(s) hit the provider rate limit.",
                }
            )
        cost = summary["total_cost_usd"]
        if cost > self.cost_warning_usd:
            alerts.append(
                {
                    "type": "HIGH_COST",
                    "severity": "ERROR" if cost > self.cost_critical_usd else "WARNING",
                    "message": f"AI spend reached ${cost:.2f}.",
                }
            )
        return alerts

    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._records)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_operation.clear()
            self._totals = {"calls": 0, "errors": 0, "rate_limited": 0, "tokens": 0, "cost_usd": 0.0}


_default_monitor = PerformanceMonitor()


def get_performance_monitor() -> PerformanceMonitor:
    return _default_monitor


__all__ = [
    "PerformanceMonitor",
    "estimate_cost_usd",
    "get_performance_monitor",
    "model_pricing",
    "normalize_usage",
]
