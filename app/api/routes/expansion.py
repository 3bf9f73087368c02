import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from httpx import HTTPError as HttpxError
from postgrest import APIError as PostgrestAPIError

from app.schemas import (
    AIStatsResponse,
    ExpansionRunSummary,
    PipelineExecuteRequest,
    PipelineExecuteResponse,
)
from app.security.guards import enforce_same_origin, rate_limit_request
from app.services.completion_service import AIUnavailableError
from app.services.expansion_pipeline_service import (
    ExpansionPipelineError,
    ExpansionRequest,
    get_expansion_pipeline,
)
from app.services.expansion_repository import list_expansion_runs, resolve_tenant_id
from app.services.postgrest_client import extract_bearer_token, raise_postgrest_error

router = APIRouter(prefix="/api/expansion", tags=["Expansion"])
logger = logging.getLogger(__name__)

PIPELINE_RATE_LIMIT = 5
PIPELINE_RATE_WINDOW_SECONDS = 60


@router.post("/pipeline/execute", response_model=PipelineExecuteResponse)
async def execute_pipeline(
    payload: PipelineExecuteRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> PipelineExecuteResponse:
    token = extract_bearer_token(authorization)
    enforce_same_origin(request)
    rate_limit_request(
        request,
        scope="expansion_pipeline",
        limit=PIPELINE_RATE_LIMIT,
        window_seconds=PIPELINE_RATE_WINDOW_SECONDS,
    )

    pipeline = get_expansion_pipeline()
    if not pipeline.completion.available:
        raise HTTPException(status_code=503, detail="Le service d'IA n'est pas configuré.")

    try:
        tenant_id = await asyncio.to_thread(resolve_tenant_id, token)
    except PostgrestAPIError as exc:
        raise_postgrest_error(exc, context="tenant lookup")
    except HttpxError as exc:
        logger.error("Supabase tenant lookup unreachable: %s", exc)
        raise HTTPException(status_code=503, detail="Impossible de joindre Supabase.")
    if not tenant_id:
        raise HTTPException(status_code=400, detail="Aucun tenant associé à ce compte.")

    expansion_request = ExpansionRequest(
        region=payload.region,
        bounds=payload.bounds,
        existing_stores=payload.existing_stores,
        competitors=payload.competitors,
        demographics=payload.demographics,
        target_candidates=payload.target_candidates,
        aggression=payload.aggression,
        min_distance_m=payload.min_distance_m,
        exclusion_zones=payload.exclusion_zones,
        business_objectives=payload.business_objectives.model_dump(),
        tenant_id=tenant_id,
    )
    try:
        result = await pipeline.execute(expansion_request)
    except ExpansionPipelineError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AIUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Le service d'IA n'est pas configuré.") from exc
    except Exception as exc:
        logger.exception("Unexpected expansion pipeline failure for %s", payload.region)
        raise HTTPException(status_code=500, detail="Erreur inattendue lors de l'analyse d'expansion.") from exc
    return PipelineExecuteResponse(**result)


@router.get("/ai/stats", response_model=AIStatsResponse)
async def ai_stats(authorization: Optional[str] = Header(default=None)) -> AIStatsResponse:
    extract_bearer_token(authorization)
    completion = get_expansion_pipeline().completion
    return AIStatsResponse(
        performance=completion.monitor.summary(),
        alerts=completion.monitor.alerts(),
        completion=completion.stats(),
        concurrency=completion.concurrency.stats(),
    )


@router.get("/runs", response_model=List[ExpansionRunSummary])
async def list_runs(authorization: Optional[str] = Header(default=None)) -> List[ExpansionRunSummary]:
    token = extract_bearer_token(authorization)
    try:
        rows = await asyncio.to_thread(list_expansion_runs, token)
    except PostgrestAPIError as exc:
        raise_postgrest_error(exc, context="expansion runs lookup")
    except HttpxError as exc:
        logger.error("Supabase expansion runs lookup unreachable: %s", exc)
        raise HTTPException(status_code=503, detail="Impossible de joindre Supabase.")
    return [ExpansionRunSummary(**row) for row in rows]
