"""Shared utilities for talking to Supabase/PostgREST on behalf of a caller."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import HTTPException
from postgrest import APIError as PostgrestAPIError
from postgrest import SyncPostgrestClient

from app.config.supabase_client import SUPABASE_ANON_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

STATUS_DETAILS = {
    401: "Authentification Supabase requise.",
    403: "Accès refusé aux analyses demandées.",
    404: "Analyse introuvable.",
}


def extract_bearer_token(header_value: Optional[str]) -> str:
    """Return the Bearer token from an Authorization header."""

    if not header_value:
        raise HTTPException(status_code=401, detail="Authentification requise.")
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        raise HTTPException(status_code=401, detail="Jeton Bearer invalide.")
    return token.strip()


def create_postgrest_client(access_token: str, *, prefer: Optional[str] = None) -> SyncPostgrestClient:
    """Instantiate a PostgREST client that runs under the caller's RLS policies."""

    if not SUPABASE_URL or not SUPABASE_ANON_KEY:
        raise HTTPException(status_code=500, detail="Supabase n'est pas configuré.")

    headers: Dict[str, str] = {"apikey": SUPABASE_ANON_KEY, "Accept": "application/json"}
    if prefer:
        headers["Prefer"] = prefer
    client = SyncPostgrestClient(f"{SUPABASE_URL.rstrip('/')}/rest/v1", headers=headers)
    client.auth(access_token)
    return client


def postgrest_status(exc: PostgrestAPIError) -> int:
    """Best effort extraction of an HTTP status code from the API error."""

    try:
        return int(exc.code) if exc.code else 502
    except (TypeError, ValueError):
        return 502


def raise_postgrest_error(exc: PostgrestAPIError, *, context: str) -> None:
    """Map PostgREST errors to FastAPI HTTP exceptions with logging."""

    status_code = postgrest_status(exc)
    logger.error("%s failed (%s): %s", context, status_code, exc.message)
    if status_code in STATUS_DETAILS:
        raise HTTPException(status_code=status_code, detail=STATUS_DETAILS[status_code]) from exc
    raise HTTPException(status_code=502, detail="Erreur lors de la communication avec Supabase.") from exc


__all__ = [
    "create_postgrest_client",
    "extract_bearer_token",
    "postgrest_status",
    "raise_postgrest_error",
]
