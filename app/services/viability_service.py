"""Rule based viability checks with AI reassessment of borderline candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.config.ai_settings import AI_MODEL_DEFAULT, AI_MODEL_ESCALATION
from app.services.ai_message_builder import build_messages
from app.services.completion_service import CompletionService, get_completion_service
from app.services.concurrency_service import ConcurrencyManager
from app.services.expansion_models import (
    ExclusionZone,
    LocationCandidate,
    LocationFactor,
    Store,
    ViabilityCheck,
    ViabilityResult,
)
from app.services.geo_utils import haversine_m, nearest_distance_m

logger = logging.getLogger(__name__)

VALIDATION_CONCURRENCY = 10
# Local checks are not API calls; only the reassessment goes through the
# shared completion throttle.
LOCAL_RATE_LIMIT_PER_MINUTE = 100000
VIABILITY_THRESHOLD = 0.6
ESCALATION_MARGIN = 0.1
QUALITY_THRESHOLD = 0.3
BORDERLINE_LOW = 0.4
BORDERLINE_HIGH = 0.7
HIGH_VIABILITY = 0.8
ROAD_ACCESS_SCORE = 0.85
POPULATION_DENSITY_SCORE = 0.80
INFRASTRUCTURE_DEFAULT = 0.5
INFRASTRUCTURE_PASS = 0.4
REASSESSMENT_MAX_TOKENS = 800

CHECK_FACTOR_TYPES = {
    "ROAD_ACCESS": "ACCESSIBILITY",
    "POPULATION_DENSITY": "DEMOGRAPHICS",
    "DISTANCE_FROM_EXISTING": "COMPETITION",
    "INFRASTRUCTURE": "INFRASTRUCTURE",
}

REASSESSMENT_SYSTEM_PROMPT = """
Tu réévalues la viabilité d'un emplacement de restaurant à partir de contrôles automatiques.
Réponds uniquement avec un objet JSON conforme au schéma fourni.
viabilityScore est compris entre 0 et 1. Un contrôle critique échoué doit fortement pénaliser le score.
""".strip()

REASSESSMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["viabilityScore", "reasoning"],
    "properties": {
        "viabilityScore": {"type": "number", "minimum": 0, "maximum": 1},
        "reasoning": {"type": "string"},
    },
}


@dataclass
class ViabilityConfig:
    min_distance_m: float = 1000.0
    exclusion_zones: List[ExclusionZone] = field(default_factory=list)
    quality_threshold: float = QUALITY_THRESHOLD
    viability_threshold: float = VIABILITY_THRESHOLD


def distance_check(
    candidate: LocationCandidate, existing_stores: Sequence[Store], min_distance_m: float
) -> ViabilityCheck:
    nearest = nearest_distance_m(candidate.lat, candidate.lng, [(s.lat, s.lng) for s in existing_stores])
    if nearest is None:
        return ViabilityCheck(
            type="DISTANCE_FROM_EXISTING", passed=True, score=1.0, critical=True, details="Aucun magasin existant"
        )
    score = min(1.0, nearest / min_distance_m) if min_distance_m > 0 else 1.0
    return ViabilityCheck(
        type="DISTANCE_FROM_EXISTING",
        passed=nearest >= min_distance_m,
        score=score,
        critical=True,
        details=f"Magasin le plus proche à {nearest:.0f} m (minimum {min_distance_m:.0f} m)",
    )


def exclusion_check(candidate: LocationCandidate, zones: Sequence[ExclusionZone]) -> ViabilityCheck:
    for zone in zones:
        if haversine_m(candidate.lat, candidate.lng, zone.lat, zone.lng) <= zone.radius_m:
            return ViabilityCheck(
                type="EXCLUSION_ZONE",
                passed=False,
                score=0.0,
                critical=True,
                details=f"Dans une zone exclue ({zone.reason or 'sans motif'})",
            )
    return ViabilityCheck(type="EXCLUSION_ZONE", passed=True, score=1.0, critical=True, details="Hors zones exclues")


def infrastructure_check(candidate: LocationCandidate) -> ViabilityCheck:
    relevant = [f for f in candidate.factors if f.type in ("INFRASTRUCTURE", "ACCESSIBILITY")]
    if relevant:
        score = sum(f.score * f.weight for f in relevant) / len(relevant)
    else:
        score = INFRASTRUCTURE_DEFAULT
    return ViabilityCheck(
        type="INFRASTRUCTURE",
        passed=score >= INFRASTRUCTURE_PASS,
        score=score,
        details=f"{len(relevant)} facteur(s) d'infrastructure",
    )


def run_checks(
    candidate: LocationCandidate, existing_stores: Sequence[Store], config: ViabilityConfig
) -> List[ViabilityCheck]:
    return [
        distance_check(candidate, existing_stores, config.min_distance_m),
        ViabilityCheck(type="ROAD_ACCESS", passed=True, score=ROAD_ACCESS_SCORE, details="Accès routier présumé"),
        ViabilityCheck(
            type="POPULATION_DENSITY", passed=True, score=POPULATION_DENSITY_SCORE, details="Densité présumée"
        ),
        exclusion_check(candidate, config.exclusion_zones),
        infrastructure_check(candidate),
    ]


def has_critical_failure(checks: Sequence[ViabilityCheck]) -> bool:
    return any(check.critical and not check.passed for check in checks)


def average_check_score(checks: Sequence[ViabilityCheck]) -> float:
    return (sum(check.score for check in checks) / len(checks)) if checks else 0.0


def needs_reassessment(candidate: LocationCandidate, checks: Sequence[ViabilityCheck]) -> bool:
    return BORDERLINE_LOW <= candidate.viability_score <= BORDERLINE_HIGH or has_critical_failure(checks)


def should_escalate(
    candidate: LocationCandidate,
    checks: Sequence[ViabilityCheck],
    threshold: float = VIABILITY_THRESHOLD,
) -> bool:
    """Whether the reassessment deserves the larger model."""

    if abs(candidate.viability_score - threshold) < ESCALATION_MARGIN:
        return True
    if has_critical_failure(checks):
        return True
    return BORDERLINE_LOW <= average_check_score(checks) <= BORDERLINE_HIGH


def update_factors(candidate: LocationCandidate, checks: Sequence[ViabilityCheck]) -> List[LocationFactor]:
    """Fold check scores into the candidate factors."""

    factors = [factor.model_copy() for factor in candidate.factors]
    by_type = {factor.type: factor for factor in factors}
    for check in checks:
        factor_type = CHECK_FACTOR_TYPES.get(check.type, "ACCESSIBILITY")
        existing = by_type.get(factor_type)
        if existing is not None:
            existing.score = (existing.score + check.score) / 2
            continue
        factor = LocationFactor(
            type=factor_type,
            score=check.score,
            weight=0.8 if check.critical else 0.5,
            description=check.details,
        )
        factors.append(factor)
        by_type[factor_type] = factor
    return factors


def build_reassessment_prompt(candidate: LocationCandidate, checks: Sequence[ViabilityCheck]) -> str:
    lines = [
        f"Emplacement {candidate.id} : ({candidate.lat:.5f}, {candidate.lng:.5f})",
        f"Score de viabilité actuel : {candidate.viability_score:.2f}",
        "Contrôles :",
    ]
    for check in checks:
        status = "OK" if check.passed else "ÉCHEC"
        critical = " (critique)" if check.critical else ""
        lines.append(f"- {check.type}{critical} : {status}, score {check.score:.2f}. {check.details}")
    if candidate.rationale:
        lines.append(f"Justification initiale : {candidate.rationale}")
    return "\n".join(lines)


def viability_metrics(results: Sequence[ViabilityResult]) -> Dict[str, Any]:
    scores = [result.candidate.viability_score for result in results]
    return {
        "total": len(results),
        "passed": sum(1 for result in results if result.valid),
        "failed": sum(1 for result in results if not result.valid),
        "escalated": sum(1 for result in results if result.escalated),
        "ai_reassessed": sum(1 for result in results if result.ai_reassessed),
        "average_viability": (sum(scores) / len(scores)) if scores else 0.0,
        "high_viability": sum(1 for score in scores if score > HIGH_VIABILITY),
    }


class ViabilityValidationService:
    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        *,
        concurrency: Optional[ConcurrencyManager] = None,
    ) -> None:
        self.completion = completion or get_completion_service()
        self.concurrency = concurrency or ConcurrencyManager(
            max_concurrent=VALIDATION_CONCURRENCY,
            rate_limit_per_minute=LOCAL_RATE_LIMIT_PER_MINUTE,
            batch_size=VALIDATION_CONCURRENCY,
        )

    async def _reassess(
        self, candidate: LocationCandidate, checks: Sequence[ViabilityCheck], escalate: bool
    ) -> Tuple[float, Optional[str]]:
        completion = await self.completion.complete(
            "viability_validation",
            build_messages(REASSESSMENT_SYSTEM_PROMPT, build_reassessment_prompt(candidate, checks)),
            schema=REASSESSMENT_SCHEMA,
            schema_name="viability_reassessment",
            seed_context={
                "candidate": [round(candidate.lat, 6), round(candidate.lng, 6)],
                "checks": [(check.type, check.passed, round(check.score, 4)) for check in checks],
            },
            model=AI_MODEL_ESCALATION if escalate else AI_MODEL_DEFAULT,
            max_tokens=REASSESSMENT_MAX_TOKENS,
            priority=3,
        )
        data = completion.data or {}
        return max(0.0, min(1.0, float(data["viabilityScore"]))), data.get("reasoning")

    async def validate_candidate(
        self,
        candidate: LocationCandidate,
        existing_stores: Sequence[Store] = (),
        config: Optional[ViabilityConfig] = None,
    ) -> ViabilityResult:
        config = config or ViabilityConfig()
        checks = run_checks(candidate, existing_stores, config)
        score = candidate.viability_score
        escalated = False
        reassessed = False
        reasoning = None

        if needs_reassessment(candidate, checks) and self.completion.available:
            escalated = should_escalate(candidate, checks, config.viability_threshold)
            try:
                score, reasoning = await self._reassess(candidate, checks, escalated)
                reassessed = True
            except Exception as exc:
                logger.warning("Viability reassessment failed for %s, keeping %.2f: %s", candidate.id, score, exc)

        updated = candidate.model_copy(
            update={"viability_score": score, "factors": update_factors(candidate, checks)}
        )
        return ViabilityResult(
            candidate=updated,
            checks=checks,
            valid=not has_critical_failure(checks) and score >= config.quality_threshold,
            original_score=candidate.viability_score,
            escalated=escalated,
            ai_reassessed=reassessed,
            reasoning=reasoning,
        )

    async def validate(
        self,
        candidates: Sequence[LocationCandidate],
        existing_stores: Sequence[Store] = (),
        config: Optional[ViabilityConfig] = None,
    ) -> Tuple[List[ViabilityResult], Dict[str, Any]]:
        config = config or ViabilityConfig()
        outcomes = await self.concurrency.process_in_parallel(
            list(candidates),
            lambda candidate: self.validate_candidate(candidate, existing_stores, config),
        )
        results: List[ViabilityResult] = []
        for candidate, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Viability validation crashed for %s: %s", candidate.id, outcome)
                continue
            results.append(outcome)
        metrics = viability_metrics(results)
        metrics["errors"] = len(candidates) - len(results)
        logger.info(
            "Viability: %d passed, %d failed, %d escalated",
            metrics["passed"],
            metrics["failed"],
            metrics["escalated"],
        )
        return results, metrics


__all__ = [
    "ViabilityConfig",
    "ViabilityValidationService",
    "average_check_score",
    "distance_check",
    "exclusion_check",
    "has_critical_failure",
    "infrastructure_check",
    "needs_reassessment",
    "run_checks",
    "should_escalate",
    "update_factors",
    "viability_metrics",
]
