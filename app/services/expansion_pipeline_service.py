"""End-to-end expansion pipeline: market, zones, discovery, viability, scoring."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.services.ai_cost_limiter import target_from_aggression
from app.services.ai_monitoring_service import PerformanceMonitor
from app.services.completion_service import CompletionService, get_completion_service
from app.services.expansion_models import (
    Bounds,
    Competitor,
    ExclusionZone,
    LocationCandidate,
    MarketAnalysisResult,
    StrategicZone,
    Store,
)
from app.services.expansion_repository import save_expansion_run
from app.services.location_discovery_service import DiscoveryConstraints, LocationDiscoveryService
from app.services.market_analysis_service import MarketAnalysisService, identify_strategic_zones
from app.services.strategic_scoring_service import StrategicScoringService
from app.services.viability_service import ViabilityConfig, ViabilityValidationService

logger = logging.getLogger(__name__)

STAGES = ("market_analysis", "zone_identification", "location_discovery", "viability_validation", "strategic_scoring")
FALLBACK_ZONE_RADIUS_M = 10000.0


class ExpansionPipelineError(RuntimeError):
    """Raised when a pipeline request cannot even be started."""


@dataclass
class ExpansionRequest:
    region: str
    bounds: Bounds
    existing_stores: List[Store] = field(default_factory=list)
    competitors: List[Competitor] = field(default_factory=list)
    demographics: Optional[Dict[str, Any]] = None
    target_candidates: Optional[int] = None
    aggression: Optional[float] = None
    min_distance_m: float = 1000.0
    exclusion_zones: List[ExclusionZone] = field(default_factory=list)
    business_objectives: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None

    def resolved_target(self) -> int:
        if self.target_candidates:
            return self.target_candidates
        if self.aggression is not None:
            return target_from_aggression(self.aggression)
        return target_from_aggression(50)


def fallback_zone(bounds: Bounds) -> StrategicZone:
    center = bounds.center
    return StrategicZone(
        id="fallback-0",
        center_lat=center["lat"],
        center_lng=center["lng"],
        radius_m=FALLBACK_ZONE_RADIUS_M,
        priority=1.0,
        estimated_stores=1,
        confidence=0.3,
        source="fallback",
        description="Centre de la zone analysée",
    )


class ExpansionPipeline:
    """Run every stage in order, recording failures instead of aborting."""

    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        *,
        market: Optional[MarketAnalysisService] = None,
        discovery: Optional[LocationDiscoveryService] = None,
        viability: Optional[ViabilityValidationService] = None,
        scoring: Optional[StrategicScoringService] = None,
        persist: bool = True,
    ) -> None:
        self.completion = completion or get_completion_service()
        self.market = market or MarketAnalysisService(self.completion)
        self.discovery = discovery or LocationDiscoveryService(self.completion)
        self.viability = viability or ViabilityValidationService(self.completion)
        self.scoring = scoring or StrategicScoringService(self.completion)
        self.persist = persist

    @property
    def monitor(self) -> PerformanceMonitor:
        return self.completion.monitor

    async def execute(self, request: ExpansionRequest) -> Dict[str, Any]:
        if not request.region.strip():
            raise ExpansionPipelineError("Region is required")

        run_id = str(uuid.uuid4())
        target = request.resolved_target()
        usage_before = self.monitor.summary()
        errors: List[Dict[str, str]] = []
        durations: Dict[str, float] = {}
        executed: List[str] = []
        successful = 0
        failed = 0

        analysis: Optional[MarketAnalysisResult] = None
        zones: List[StrategicZone] = []
        discovered: List[LocationCandidate] = []
        validated: List[LocationCandidate] = []
        discovery_metrics: Dict[str, Any] = {}
        viability_metrics: Dict[str, Any] = {}
        scoring: Dict[str, Any] = {}

        async def _stage(name: str, coroutine_factory) -> Any:
            nonlocal successful, failed
            started = time.monotonic()
            executed.append(name)
            try:
                result = await coroutine_factory()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failed += 1
                errors.append({"stage": name, "error": str(exc) or exc.__class__.__name__})
                logger.warning("Pipeline %s stage %s failed: %s", run_id, name, exc)
                return None
            finally:
                durations[name] = round((time.monotonic() - started) * 1000, 2)
            successful += 1
            return result

        analysis = await _stage(
            "market_analysis",
            lambda: self.market.analyze(
                request.region,
                request.bounds,
                request.existing_stores,
                request.competitors,
                request.demographics,
            ),
        )

        async def _zones() -> List[StrategicZone]:
            found = identify_strategic_zones(analysis) if analysis is not None else []
            return found or [fallback_zone(request.bounds)]

        zones = await _stage("zone_identification", _zones) or [fallback_zone(request.bounds)]

        constraints = DiscoveryConstraints(
            min_spacing_m=request.min_distance_m,
            min_distance_from_stores_m=request.min_distance_m,
            exclusion_zones=list(request.exclusion_zones),
        )
        discovery = await _stage(
            "location_discovery",
            lambda: self.discovery.discover(zones, target, request.existing_stores, constraints),
        )
        if discovery is not None:
            discovered = discovery.candidates
            discovery_metrics = discovery.metrics

        viability = await _stage(
            "viability_validation",
            lambda: self.viability.validate(
                discovered,
                request.existing_stores,
                ViabilityConfig(min_distance_m=request.min_distance_m, exclusion_zones=list(request.exclusion_zones)),
            ),
        )
        if viability is not None:
            results, viability_metrics = viability
            validated = [result.candidate for result in results if result.valid]

        scoring = await _stage(
            "strategic_scoring",
            lambda: self.scoring.score_and_rank(
                validated,
                analysis,
                zones,
                request.existing_stores,
                request.competitors,
                request.business_objectives,
            ),
        ) or {}

        usage_after = self.monitor.summary()
        rankings = scoring.get("rankings") or {}
        result = {
            "run_id": run_id,
            "region": request.region,
            "target_candidates": target,
            "candidates": [score.model_dump(by_alias=True) for score in scoring.get("scores", [])],
            "rankings": {
                name: [item.candidate_id for item in items] for name, items in rankings.items() if name != "all"
            },
            "portfolio": scoring.get("portfolio") or {},
            "recommendations": scoring.get("recommendations") or [],
            "market_analysis": analysis.model_dump(by_alias=True) if analysis is not None else None,
            "zones": [zone.model_dump(by_alias=True) for zone in zones],
            "metadata": {
                "stages_executed": executed,
                "stage_durations_ms": durations,
                "total_tokens": usage_after["total_tokens"] - usage_before["total_tokens"],
                "total_cost_usd": round(usage_after["total_cost_usd"] - usage_before["total_cost_usd"], 6),
                "ai_calls": usage_after["total_calls"] - usage_before["total_calls"],
                "successful_operations": successful,
                "failed_operations": failed,
            },
            "quality_metrics": {
                "discovery": discovery_metrics,
                "viability": viability_metrics,
                "scoring": scoring.get("stats") or {},
                "discovered": len(discovered),
                "validated": len(validated),
            },
            "errors": errors,
        }

        if self.persist:
            await asyncio.to_thread(save_expansion_run, result, tenant_id=request.tenant_id)
        logger.info(
            "Pipeline %s for %s finished: %d candidates, %d stage failure(s)",
            run_id,
            request.region,
            len(result["candidates"]),
            failed,
        )
        return result


_default_pipeline: Optional[ExpansionPipeline] = None


def get_expansion_pipeline() -> ExpansionPipeline:
    global _default_pipeline
    if _default_pipeline is None:
        _default_pipeline = ExpansionPipeline()
    return _default_pipeline


__all__ = [
    "ExpansionPipeline",
    "ExpansionPipelineError",
    "ExpansionRequest",
    "STAGES",
    "fallback_zone",
    "get_expansion_pipeline",
]
