"""Strategic scoring, ranking and portfolio view of expansion candidates."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.config.ai_settings import AI_MAX_AI_RATIONALES
from app.services.ai_cost_limiter import select_for_ai
from app.services.ai_message_builder import build_messages
from app.services.completion_service import CompletionService, get_completion_service
from app.services.expansion_models import (
    Competitor,
    LocationCandidate,
    MarketAnalysisResult,
    RiskFactor,
    StrategicScore,
    StrategicZone,
    Store,
)
from app.services.geo_utils import haversine_m, nearest_distance_m
from app.services.rationale_service import UNKNOWN, RationaleContext, RationaleService

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_RADIUS_M = 5000.0
DEFAULT_EXPECTED_REVENUE = 500000.0
INVESTMENT_PER_STORE = 250000.0
SCORING_MAX_TOKENS = 1500

SATURATION_LEVELS = {"low": "LOW", "medium": "MODERATE", "high": "HIGH", "oversaturated": "OVERSATURATED"}
SATURATION_ALIGNMENT = {"LOW": 0.9, "MODERATE": 0.7, "HIGH": 0.4, "OVERSATURATED": 0.2}
MARKET_SHARE_POTENTIAL = {"LOW": 0.8, "MODERATE": 0.6}

SCORING_SYSTEM_PROMPT = """
Tu évalues l'intérêt stratégique d'un emplacement pour une chaîne de restaurants.
Réponds uniquement avec un objet JSON conforme au schéma fourni.
- strategicScore, severity, likelihood et impact sont compris entre 0 et 1.
- riskLevel vaut LOW, MEDIUM ou HIGH.
- expectedRevenue est un chiffre d'affaires annuel estimé en dollars.
""".strip()

_NULLABLE_UNIT = {"type": ["number", "null"], "minimum": 0, "maximum": 1}
SCORING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["strategicScore", "riskLevel", "riskFactors", "expectedRevenue", "rationale"],
    "properties": {
        "strategicScore": _NULLABLE_UNIT,
        "riskLevel": {"type": ["string", "null"], "enum": ["LOW", "MEDIUM", "HIGH", None]},
        "riskFactors": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["type", "description", "severity", "likelihood", "impact"],
                "properties": {
                    "type": {"type": ["string", "null"]},
                    "description": {"type": ["string", "null"]},
                    "severity": _NULLABLE_UNIT,
                    "likelihood": _NULLABLE_UNIT,
                    "impact": _NULLABLE_UNIT,
                },
            },
        },
        "expectedRevenue": {"type": ["number", "null"], "minimum": 0},
        "rationale": {"type": ["string", "null"]},
    },
}


@dataclass
class ScoringWeights:
    saturation: float = 0.25
    proximity: float = 0.25
    demographic: float = 0.2
    viability: float = 0.3

    def normalized(self) -> "ScoringWeights":
        total = self.saturation + self.proximity + self.demographic + self.viability
        if total <= 0:
            return ScoringWeights()
        return ScoringWeights(
            saturation=self.saturation / total,
            proximity=self.proximity / total,
            demographic=self.demographic / total,
            viability=self.viability / total,
        )


def weights_for_objectives(objectives: Optional[Dict[str, Any]] = None) -> ScoringWeights:
    """Shift the default criteria weights towards the business objectives."""

    weights = ScoringWeights()
    if not objectives:
        return weights
    risk_tolerance = str(objectives.get("risk_tolerance") or objectives.get("riskTolerance") or "").upper()
    expansion_speed = str(objectives.get("expansion_speed") or objectives.get("expansionSpeed") or "").upper()
    if risk_tolerance == "LOW":
        weights.viability += 0.1
        weights.saturation += 0.05
        weights.proximity -= 0.05
    elif risk_tolerance == "HIGH":
        weights.viability -= 0.1
        weights.demographic += 0.1
    if expansion_speed == "AGGRESSIVE":
        weights.demographic += 0.1
        weights.saturation -= 0.05
    elif expansion_speed == "CONSERVATIVE":
        weights.saturation += 0.1
    return weights.normalized()


def saturation_level(analysis: Optional[MarketAnalysisResult]) -> str:
    if analysis is None:
        return "UNKNOWN"
    return SATURATION_LEVELS.get(analysis.saturation.level, "UNKNOWN")


def market_context(
    candidate: LocationCandidate,
    analysis: Optional[MarketAnalysisResult],
    zones: Sequence[StrategicZone] = (),
    radius_m: float = DEFAULT_CONTEXT_RADIUS_M,
) -> Dict[str, float]:
    level = saturation_level(analysis)
    nearby_opportunities = 0
    nearby_gaps: List[float] = []
    positive_insights = 0
    if analysis is not None:
        for opportunity in analysis.opportunities:
            location = opportunity.location
            if location and haversine_m(candidate.lat, candidate.lng, location.lat, location.lng) <= radius_m:
                nearby_opportunities += 1
        for gap in analysis.competitive_gaps:
            if haversine_m(candidate.lat, candidate.lng, gap.area.lat, gap.area.lng) <= radius_m:
                nearby_gaps.append(gap.gap_size)
        positive_insights = sum(
            1 for insight in analysis.demographic_insights if insight.actionable and insight.relevance > 0.5
        )
    in_zone = any(
        haversine_m(candidate.lat, candidate.lng, zone.center_lat, zone.center_lng) <= zone.radius_m
        for zone in zones
    )
    return {
        "saturation_alignment": SATURATION_ALIGNMENT.get(level, 0.5),
        "growth_alignment": min(1.0, 0.3 * nearby_opportunities),
        "gap_alignment": (sum(nearby_gaps) / len(nearby_gaps)) if nearby_gaps else 0.3,
        "demographic_fit": min(1.0, 0.2 * positive_insights),
        "zone_alignment": 0.8 if in_zone else 0.3,
    }


def proximity_score(nearest_m: Optional[float]) -> float:
    if nearest_m is None:
        return 0.8
    if nearest_m < 1000:
        return 0.2
    if nearest_m > 10000:
        return 0.4
    if 2000 <= nearest_m <= 5000:
        return 0.9
    return 0.6


def competitive_positioning(
    candidate: LocationCandidate,
    analysis: Optional[MarketAnalysisResult],
    existing_stores: Sequence[Store] = (),
    competitors: Sequence[Competitor] = (),
) -> Dict[str, Any]:
    points = [(store.lat, store.lng) for store in existing_stores] + [(comp.lat, comp.lng) for comp in competitors]
    nearest = nearest_distance_m(candidate.lat, candidate.lng, points)
    level = saturation_level(analysis)
    has_gaps = bool(analysis and analysis.competitive_gaps)

    threats: List[str] = []
    advantages: List[str] = []
    if nearest is not None and nearest < 1000:
        threats.append(f"Établissement à {nearest:.0f} m")
    if level in ("HIGH", "OVERSATURATED"):
        threats.append("Marché saturé")
    if nearest is None or nearest > 2000:
        advantages.append("Aucun établissement à proximité immédiate")
    if has_gaps:
        advantages.append("Écarts concurrentiels identifiés dans la région")
    if level == "LOW":
        advantages.append("Marché peu saturé")

    return {
        "nearest_distance_m": nearest,
        "proximity_score": proximity_score(nearest),
        "market_share_potential": MARKET_SHARE_POTENTIAL.get(level, 0.3),
        "differentiation": 0.7 if has_gaps else 0.4,
        "threats": threats,
        "advantages": advantages,
    }


def risk_level_for_score(score: float) -> str:
    if score > 0.7:
        return "LOW"
    if score > 0.4:
        return "MEDIUM"
    return "HIGH"


def basic_score(
    candidate: LocationCandidate,
    context: Dict[str, float],
    positioning: Dict[str, Any],
    weights: ScoringWeights,
) -> StrategicScore:
    """Deterministic score used when the model is unavailable or fails."""

    score = (
        context["saturation_alignment"] * weights.saturation
        + positioning["proximity_score"] * weights.proximity
        + context["demographic_fit"] * weights.demographic
        + candidate.viability_score * weights.viability
    ) / (weights.saturation + weights.proximity + weights.demographic + weights.viability)
    score = max(0.0, min(1.0, score))
    return StrategicScore(
        candidate_id=candidate.id,
        lat=candidate.lat,
        lng=candidate.lng,
        strategic_score=score,
        viability_score=candidate.viability_score,
        market_context=context,
        competitive_positioning=positioning,
        risk_level=risk_level_for_score(score),
        risk_score=1 - score,
        expected_revenue=DEFAULT_EXPECTED_REVENUE,
        ai_scored=False,
    )


def _unit_or_default(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def parse_ai_score(
    payload: Dict[str, Any],
    candidate: LocationCandidate,
    context: Dict[str, float],
    positioning: Dict[str, Any],
) -> StrategicScore:
    score = _unit_or_default(payload.get("strategicScore"), 0.5)
    risk_factors = [
        RiskFactor(
            type=str(raw.get("type") or "MARKET").upper(),
            description=raw.get("description") or "",
            severity=_unit_or_default(raw.get("severity"), 0.5),
            likelihood=_unit_or_default(raw.get("likelihood"), 0.5),
            impact=_unit_or_default(raw.get("impact"), 0.5),
        )
        for raw in payload.get("riskFactors") or []
        if isinstance(raw, dict)
    ]
    if risk_factors:
        risk_score = sum(f.severity * f.likelihood for f in risk_factors) / len(risk_factors)
    else:
        risk_score = 1 - score
    risk_level = payload.get("riskLevel")
    if risk_level not in ("LOW", "MEDIUM", "HIGH"):
        risk_level = risk_level_for_score(score)
    revenue = payload.get("expectedRevenue")
    try:
        expected_revenue = float(revenue) if revenue is not None else DEFAULT_EXPECTED_REVENUE
    except (TypeError, ValueError):
        expected_revenue = DEFAULT_EXPECTED_REVENUE
    return StrategicScore(
        candidate_id=candidate.id,
        lat=candidate.lat,
        lng=candidate.lng,
        strategic_score=score,
        viability_score=candidate.viability_score,
        market_context=context,
        competitive_positioning=positioning,
        risk_level=risk_level,
        risk_score=max(0.0, min(1.0, risk_score)),
        risk_factors=risk_factors,
        expected_revenue=max(0.0, expected_revenue),
        rationale=payload.get("rationale"),
        ai_scored=True,
    )


def build_scoring_prompt(
    candidate: LocationCandidate,
    context: Dict[str, float],
    positioning: Dict[str, Any],
    analysis: Optional[MarketAnalysisResult],
) -> str:
    lines = [
        f"Emplacement {candidate.id} : ({candidate.lat:.5f}, {candidate.lng:.5f})",
        f"Viabilité estimée : {candidate.viability_score:.2f}, confiance : {candidate.confidence:.2f}",
        "Contexte de marché : "
        + ", ".join(f"{name}={value:.2f}" for name, value in sorted(context.items())),
        f"Saturation de la région : {saturation_level(analysis)}",
    ]
    nearest = positioning.get("nearest_distance_m")
    lines.append(
        f"Établissement le plus proche : {nearest:.0f} m" if nearest is not None else "Aucun établissement connu"
    )
    if positioning["threats"]:
        lines.append("Menaces : " + "; ".join(positioning["threats"]))
    if positioning["advantages"]:
        lines.append("Atouts : " + "; ".join(positioning["advantages"]))
    if candidate.rationale:
        lines.append(f"Justification initiale : {candidate.rationale}")
    return "\n".join(lines)


def rationale_context(
    candidate: LocationCandidate,
    context: Dict[str, float],
    positioning: Dict[str, Any],
) -> RationaleContext:
    factor_scores = {factor.type: factor.score for factor in candidate.factors}
    nearest = positioning.get("nearest_distance_m")
    return RationaleContext(
        lat=candidate.lat,
        lng=candidate.lng,
        population_score=factor_scores.get("POPULATION_DENSITY", context.get("demographic_fit", 0.5)),
        proximity_score=positioning.get("proximity_score", 0.5),
        turnover_score=candidate.viability_score,
        urban_density=factor_scores.get("INFRASTRUCTURE"),
        nearest_store_km=nearest / 1000 if nearest is not None else UNKNOWN,
    )


def build_rankings(scores: Sequence[StrategicScore]) -> Dict[str, List[StrategicScore]]:
    """Assign ``priority_rank`` and derive the ranking buckets."""

    ordered = sorted(scores, key=lambda item: item.strategic_score, reverse=True)
    ranked = [item.model_copy(update={"priority_rank": index + 1}) for index, item in enumerate(ordered)]
    return {
        "all": ranked,
        "top": ranked[:10],
        "high_value": [item for item in ranked if item.strategic_score > 0.7],
        "low_risk": [item for item in ranked if item.risk_level == "LOW"],
        "quick_wins": [item for item in ranked if item.strategic_score > 0.6 and item.risk_level != "HIGH"][:5],
    }


def portfolio_summary(scores: Sequence[StrategicScore]) -> Dict[str, Any]:
    count = len(scores)
    total_revenue = sum(item.expected_revenue for item in scores)
    average_risk = (sum(item.risk_score for item in scores) / count) if count else 0.0
    if average_risk < 0.3:
        risk = "LOW"
    elif average_risk < 0.7:
        risk = "MEDIUM"
    else:
        risk = "HIGH"
    investment = count * INVESTMENT_PER_STORE
    immediate = math.floor(count * 0.3)
    near_term = math.floor(count * 0.5)
    return {
        "candidate_count": count,
        "total_expected_revenue": total_revenue,
        "average_risk_score": average_risk,
        "portfolio_risk": risk,
        "total_investment": investment,
        "roi": (total_revenue / investment) if investment else 0.0,
        "distribution": {
            "immediate": immediate,
            "near_term": near_term,
            "long_term": count - immediate - near_term,
        },
    }


def portfolio_recommendations(portfolio: Dict[str, Any], rankings: Dict[str, List[StrategicScore]]) -> List[str]:
    recommendations: List[str] = []
    if not portfolio["candidate_count"]:
        return ["Aucun emplacement retenu : élargir la zone ou assouplir les contraintes."]
    if rankings["quick_wins"]:
        recommendations.append(
            f"Lancer en priorité {len(rankings['quick_wins'])} emplacement(s) à gain rapide."
        )
    if portfolio["portfolio_risk"] == "HIGH":
        recommendations.append("Risque global élevé : procéder par phases et valider sur le terrain.")
    elif portfolio["portfolio_risk"] == "LOW":
        recommendations.append("Risque global faible : une ouverture accélérée est envisageable.")
    if portfolio["roi"] < 1:
        recommendations.append("ROI projeté inférieur à 1 : revoir les hypothèses de chiffre d'affaires.")
    if rankings["high_value"]:
        recommendations.append(f"{len(rankings['high_value'])} emplacement(s) à forte valeur identifiés.")
    return recommendations


class StrategicScoringService:
    """Score candidates with the model where the budget allows, else locally."""

    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        *,
        rationale: Optional[RationaleService] = None,
        max_ai_rationales: int = AI_MAX_AI_RATIONALES,
    ) -> None:
        self.completion = completion or get_completion_service()
        self.rationale = rationale or RationaleService(self.completion)
        self.max_ai_rationales = max(0, max_ai_rationales)
        self.ai_scored = 0
        self.fallbacks = 0

    async def _explain_basic_scores(
        self,
        scores: Sequence[StrategicScore],
        prepared: Sequence[Tuple[LocationCandidate, Dict[str, float], Dict[str, Any]]],
    ) -> int:
        """Fill ``rationale`` on basic scores; the best ones get a model-written text."""

        pending = [
            (score, rationale_context(candidate, context, positioning))
            for score, (candidate, context, positioning) in zip(scores, prepared)
            if not score.ai_scored
        ]
        pending.sort(key=lambda item: item[0].strategic_score, reverse=True)
        outputs = await asyncio.gather(
            *(
                self.rationale.generate(context, allow_ai=rank < self.max_ai_rationales)
                for rank, (_, context) in enumerate(pending)
            ),
            return_exceptions=True,
        )
        written = 0
        for (score, _), output in zip(pending, outputs):
            if isinstance(output, BaseException):
                logger.warning("No rationale for %s: %s", score.candidate_id, output)
                continue
            score.rationale = output.text
            if output.source == "ai":
                written += 1
        return written

    async def _score_with_ai(
        self,
        candidate: LocationCandidate,
        context: Dict[str, float],
        positioning: Dict[str, Any],
        analysis: Optional[MarketAnalysisResult],
    ) -> StrategicScore:
        prompt = build_scoring_prompt(candidate, context, positioning, analysis)
        completion = await self.completion.complete(
            "strategic_scoring",
            build_messages(SCORING_SYSTEM_PROMPT, prompt),
            schema=SCORING_SCHEMA,
            schema_name="strategic_scoring",
            seed_context={"candidate": [round(candidate.lat, 6), round(candidate.lng, 6)], "context": context},
            max_tokens=SCORING_MAX_TOKENS,
            priority=1,
        )
        return parse_ai_score(completion.data or {}, candidate, context, positioning)

    async def score_candidates(
        self,
        candidates: Sequence[LocationCandidate],
        analysis: Optional[MarketAnalysisResult] = None,
        zones: Sequence[StrategicZone] = (),
        existing_stores: Sequence[Store] = (),
        competitors: Sequence[Competitor] = (),
        objectives: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[StrategicScore], Dict[str, int]]:
        weights = weights_for_objectives(objectives)
        prepared = []
        for candidate in candidates:
            context = market_context(candidate, analysis, zones)
            positioning = competitive_positioning(candidate, analysis, existing_stores, competitors)
            prepared.append((candidate, context, positioning))

        if self.completion.available:
            selected, _ = select_for_ai(prepared, lambda item: item[0].viability_score)
        else:
            selected = []
        selected_ids = {item[0].id for item in selected}

        ai_outcomes = await asyncio.gather(
            *(self._score_with_ai(candidate, context, positioning, analysis) for candidate, context, positioning in selected),
            return_exceptions=True,
        )
        ai_scores = {}
        failures = 0
        for (candidate, context, positioning), outcome in zip(selected, ai_outcomes):
            if isinstance(outcome, BaseException):
                failures += 1
                logger.warning("AI scoring failed for %s, using basic score: %s", candidate.id, outcome)
                continue
            ai_scores[candidate.id] = outcome

        scores: List[StrategicScore] = []
        for candidate, context, positioning in prepared:
            if candidate.id in ai_scores:
                scores.append(ai_scores[candidate.id])
            else:
                scores.append(basic_score(candidate, context, positioning, weights))
        ai_rationales = await self._explain_basic_scores(scores, prepared)
        self.ai_scored += len(ai_scores)
        self.fallbacks += len(prepared) - len(ai_scores)
        stats = {
            "ai_scored": len(ai_scores),
            "ai_failed": failures,
            "basic_scored": len(prepared) - len(ai_scores),
            "ai_selected": len(selected_ids),
            "ai_rationales": ai_rationales,
        }
        return scores, stats

    async def score_and_rank(
        self,
        candidates: Sequence[LocationCandidate],
        analysis: Optional[MarketAnalysisResult] = None,
        zones: Sequence[StrategicZone] = (),
        existing_stores: Sequence[Store] = (),
        competitors: Sequence[Competitor] = (),
        objectives: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        scores, stats = await self.score_candidates(
            candidates, analysis, zones, existing_stores, competitors, objectives
        )
        rankings = build_rankings(scores)
        portfolio = portfolio_summary(rankings["all"])
        return {
            "scores": rankings["all"],
            "rankings": rankings,
            "portfolio": portfolio,
            "recommendations": portfolio_recommendations(portfolio, rankings),
            "stats": stats,
        }


__all__ = [
    "SCORING_SCHEMA",
    "ScoringWeights",
    "StrategicScoringService",
    "basic_score",
    "build_rankings",
    "competitive_positioning",
    "market_context",
    "parse_ai_score",
    "portfolio_recommendations",
    "portfolio_summary",
    "proximity_score",
    "rationale_context",
    "risk_level_for_score",
    "weights_for_objectives",
]
