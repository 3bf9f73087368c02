"""Persistence of expansion runs and AI usage rows in Supabase."""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from fastapi import HTTPException
from httpx import HTTPError as HttpxError
from postgrest import APIError as PostgrestAPIError

from app.config.supabase_client import (
    AI_USAGE_TABLE,
    EXPANSION_RUNS_TABLE,
    SUPABASE_URL,
    USER_TENANTS_TABLE,
    get_supabase_client,
)
from app.services.postgrest_client import create_postgrest_client

logger = logging.getLogger(__name__)
T = TypeVar("T")

RUN_HISTORY_LIMIT = 20


def _retry_supabase_call(
    operation: Callable[[], T],
    *,
    retries: int = 2,
    backoff_seconds: Sequence[float] = (0.2, 0.5, 1.0),
    label: str,
) -> T:
    """Run a Supabase call with a short retry/backoff strategy."""

    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        start = time.monotonic()
        try:
            result = operation()
            logger.debug(
                "Supabase call succeeded",
                extra={
                    "label": label,
                    "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    "supabase_url": SUPABASE_URL,
                },
            )
            return result
        except HttpxError as exc:
            logger.warning(
                "Supabase call failed",
                extra={
                    "label": label,
                    "attempt": attempt,
                    "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    "supabase_url": SUPABASE_URL,
                    "error": str(exc),
                },
            )
            if attempt >= attempts:
                raise RuntimeError("Supabase unreachable.") from exc
            time.sleep(backoff_seconds[min(attempt - 1, len(backoff_seconds) - 1)])
    raise RuntimeError("Supabase unreachable.")


def _insert(table: str, row: Dict[str, Any], *, label: str) -> bool:
    client = get_supabase_client()
    if client is None:
        logger.debug("Supabase not configured; skipping %s", label)
        return False

    def _request() -> Any:
        return client.table(table).insert(row).execute()

    try:
        _retry_supabase_call(_request, label=label)
    except (RuntimeError, PostgrestAPIError) as exc:
        logger.warning("Could not persist %s: %s", label, exc)
        return False
    return True


def save_expansion_run(result: Dict[str, Any], *, tenant_id: Optional[str] = None) -> bool:
    """Store a pipeline result; returns False when it was not persisted."""

    metadata = result.get("metadata") or {}
    row = {
        "id": result.get("run_id"),
        "tenant_id": tenant_id,
        "region": result.get("region"),
        "candidate_count": len(result.get("candidates") or []),
        "total_tokens": metadata.get("total_tokens", 0),
        "total_cost_usd": metadata.get("total_cost_usd", 0.0),
        "result": result,
    }
    return _insert(EXPANSION_RUNS_TABLE, row, label="expansion_run.insert")


def save_usage_record(record: Dict[str, Any]) -> bool:
    row = {
        "operation": record.get("operation"),
        "model": record.get("model"),
        "prompt_tokens": record.get("prompt_tokens", 0),
        "completion_tokens": record.get("completion_tokens", 0),
        "total_tokens": record.get("total_tokens", 0),
        "cost_usd": record.get("cost_usd", 0.0),
        "duration_ms": record.get("duration_ms", 0.0),
        "success": record.get("success", False),
        "error_status": record.get("error_status"),
    }
    return _insert(AI_USAGE_TABLE, row, label="ai_usage.insert")


def decode_claims(access_token: str) -> Dict[str, Any]:
    """Read the JWT payload; the signature is checked by Supabase on every query."""

    try:
        payload_segment = access_token.split(".")[1]
        padding = "=" * (-len(payload_segment) % 4)
        decoded = base64.urlsafe_b64decode((payload_segment + padding).encode("ascii"))
        claims = json.loads(decoded.decode("utf-8"))
    except (IndexError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Jeton d'authentification invalide.") from exc
    if not isinstance(claims, dict):
        raise HTTPException(status_code=401, detail="Jeton d'authentification invalide.")
    return claims


def resolve_tenant_id(access_token: str) -> Optional[str]:
    """Return the tenant linked to the caller, or None when the account has none."""

    user_id = decode_claims(access_token).get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Utilisateur Supabase invalide.")

    with create_postgrest_client(access_token) as client:
        response = (
            client.table(USER_TENANTS_TABLE)
            .select("tenant_id")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
    if not response.data:
        return None
    tenant_id = response.data[0].get("tenant_id")
    return str(tenant_id) if tenant_id else None


def list_expansion_runs(access_token: str, *, limit: int = RUN_HISTORY_LIMIT) -> List[Dict[str, Any]]:
    """Return the caller's most recent runs; row level security scopes the tenant."""

    with create_postgrest_client(access_token) as client:
        response = (
            client.table(EXPANSION_RUNS_TABLE)
            .select("id,region,candidate_count,total_tokens,total_cost_usd,created_at")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or []


__all__ = [
    "decode_claims",
    "list_expansion_runs",
    "resolve_tenant_id",
    "save_expansion_run",
    "save_usage_record",
]
