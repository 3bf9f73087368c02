"""AI driven discovery of candidate store locations inside strategic zones."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.services.ai_message_builder import build_messages
from app.services.completion_service import CompletionService, get_completion_service
from app.services.expansion_models import (
    FACTOR_TYPES,
    ExclusionZone,
    LocationCandidate,
    LocationFactor,
    StrategicZone,
    Store,
)
from app.services.geo_utils import (
    haversine_m,
    mean_pairwise_distance_m,
    polygon_area_km2,
    polygon_centroid,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_QUALITY_THRESHOLD = 0.3
DEFAULT_MIN_SPACING_M = 1000.0
NEARBY_STORE_RADIUS_M = 20000.0
MAX_PROMPT_STORES = 25
MIN_SIGNAL = 0.1
BASE_VIABILITY_WEIGHT = 0.4
FACTOR_VIABILITY_WEIGHT = 0.6
HIGH_QUALITY = 0.8
MEDIUM_QUALITY = 0.5
CLUSTERED_BELOW_M = 2000.0
DISTRIBUTED_BELOW_M = 10000.0
DISCOVERY_MAX_TOKENS = 6000

DISCOVERY_SYSTEM_PROMPT = """
Tu proposes des emplacements précis pour de nouveaux restaurants d'une chaîne.
Réponds uniquement avec un objet JSON conforme au schéma fourni.
Règles :
- Chaque emplacement est à l'intérieur de la zone décrite et respecte les distances minimales.
- confidence et viabilityScore sont compris entre 0 et 1.
- Les facteurs utilisent uniquement les types : {types}.
- Ne reprends jamais la position d'un magasin existant.
""".strip().format(types=", ".join(FACTOR_TYPES))

_NULLABLE_UNIT = {"type": ["number", "null"], "minimum": 0, "maximum": 1}
DISCOVERY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["candidates"],
    "properties": {
        "candidates": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["lat", "lng", "confidence", "viabilityScore", "rationale", "address", "factors"],
                "properties": {
                    "lat": {"type": "number", "minimum": -90, "maximum": 90},
                    "lng": {"type": "number", "minimum": -180, "maximum": 180},
                    "confidence": _NULLABLE_UNIT,
                    "viabilityScore": _NULLABLE_UNIT,
                    "rationale": {"type": ["string", "null"]},
                    "address": {"type": ["string", "null"]},
                    "factors": {
                        "type": ["array", "null"],
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "required": ["type", "score", "weight", "description"],
                            "properties": {
                                "type": {"type": ["string", "null"]},
                                "score": _NULLABLE_UNIT,
                                "weight": _NULLABLE_UNIT,
                                "description": {"type": ["string", "null"]},
                            },
                        },
                    },
                },
            },
        }
    },
}


@dataclass
class DiscoveryConstraints:
    min_spacing_m: float = DEFAULT_MIN_SPACING_M
    min_distance_from_stores_m: float = DEFAULT_MIN_SPACING_M
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    batch_size: int = DEFAULT_BATCH_SIZE
    exclusion_zones: List[ExclusionZone] = field(default_factory=list)


@dataclass
class DiscoveryBatch:
    batch_id: str
    zone_id: str
    target: int
    candidates: List[LocationCandidate] = field(default_factory=list)
    quality: float = 0.0
    error: Optional[str] = None


@dataclass
class DiscoveryResult:
    candidates: List[LocationCandidate]
    batches: List[DiscoveryBatch]
    metrics: Dict[str, Any]

    @property
    def failed_batches(self) -> int:
        return sum(1 for batch in self.batches if batch.error)


def zone_center(zone: StrategicZone) -> Tuple[float, float]:
    if zone.polygon:
        return polygon_centroid(zone.polygon)
    return zone.center_lat, zone.center_lng


def zone_area_km2(zone: StrategicZone) -> float:
    if zone.polygon:
        return polygon_area_km2(zone.polygon)
    return math.pi * (zone.radius_m / 1000) ** 2


def allocate_zone_targets(zones: Sequence[StrategicZone], target_count: int) -> Dict[str, int]:
    """Split the overall target across zones in proportion to their priority."""

    if not zones or target_count <= 0:
        return {}
    total_priority = sum(max(zone.priority, 0.0) for zone in zones)
    if total_priority <= 0:
        share = math.ceil(target_count / len(zones))
        return {zone.id: share for zone in zones}
    return {
        zone.id: math.ceil(target_count * max(zone.priority, 0.0) / total_priority)
        for zone in zones
        if zone.priority > 0
    }


def plan_batches(
    zones: Sequence[StrategicZone], target_count: int, batch_size: int = DEFAULT_BATCH_SIZE
) -> List[Tuple[str, StrategicZone, int]]:
    targets = allocate_zone_targets(zones, target_count)
    size = max(1, batch_size)
    plan: List[Tuple[str, StrategicZone, int]] = []
    for zone in zones:
        remaining = targets.get(zone.id, 0)
        index = 0
        while remaining > 0:
            count = min(size, remaining)
            plan.append((f"{zone.id}-batch-{index}", zone, count))
            remaining -= count
            index += 1
    return plan


def build_discovery_prompt(
    zone: StrategicZone,
    count: int,
    existing_stores: Sequence[Store],
    constraints: DiscoveryConstraints,
) -> str:
    center_lat, center_lng = zone_center(zone)
    nearby = [
        store
        for store in existing_stores
        if haversine_m(center_lat, center_lng, store.lat, store.lng) <= NEARBY_STORE_RADIUS_M
    ]
    lines = [
        f"Propose {count} emplacements dans la zone {zone.id}.",
        f"Centre de la zone : ({center_lat:.5f}, {center_lng:.5f})",
        f"Rayon : {zone.radius_m:.0f} m, surface approximative : {zone_area_km2(zone):.1f} km²",
    ]
    if zone.description:
        lines.append(f"Contexte : {zone.description}")
    lines.append(f"Magasins existants à moins de {NEARBY_STORE_RADIUS_M / 1000:.0f} km ({len(nearby)}) :")
    for store in nearby[:MAX_PROMPT_STORES]:
        lines.append(f"- ({store.lat:.5f}, {store.lng:.5f})")
    if len(nearby) > MAX_PROMPT_STORES:
        lines.append(f"... et {len(nearby) - MAX_PROMPT_STORES} autres")
    lines.append("Contraintes :")
    lines.append(f"- distance minimale entre emplacements : {constraints.min_spacing_m:.0f} m")
    lines.append(f"- distance minimale d'un magasin existant : {constraints.min_distance_from_stores_m:.0f} m")
    for exclusion in constraints.exclusion_zones:
        lines.append(
            f"- zone interdite : ({exclusion.lat:.5f}, {exclusion.lng:.5f}) rayon {exclusion.radius_m:.0f} m"
        )
    return "\n".join(lines)


def _unit_or_default(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, number))


def parse_factor(raw: Dict[str, Any]) -> LocationFactor:
    factor_type = str(raw.get("type") or "").strip().upper()
    if factor_type not in FACTOR_TYPES:
        factor_type = "ACCESSIBILITY"
    return LocationFactor(
        type=factor_type,
        score=_unit_or_default(raw.get("score"), 0.5),
        weight=_unit_or_default(raw.get("weight"), 0.5),
        description=raw.get("description"),
    )


def parse_candidates(payload: Any, zone_id: str, batch_id: str) -> List[LocationCandidate]:
    """Convert the raw model payload into candidates, filling defaults."""

    raw_candidates = payload.get("candidates") if isinstance(payload, dict) else payload
    if not isinstance(raw_candidates, list):
        return []
    candidates: List[LocationCandidate] = []
    for index, raw in enumerate(raw_candidates):
        if not isinstance(raw, dict):
            continue
        try:
            lat = float(raw.get("lat") or 0.0)
            lng = float(raw.get("lng") or 0.0)
        except (TypeError, ValueError):
            continue
        factors = [parse_factor(item) for item in raw.get("factors") or [] if isinstance(item, dict)]
        if not factors:
            factors = [LocationFactor()]
        candidates.append(
            LocationCandidate(
                id=f"{batch_id}-{index}",
                lat=lat,
                lng=lng,
                zone_id=zone_id,
                batch_id=batch_id,
                confidence=_unit_or_default(raw.get("confidence"), 0.5),
                viability_score=_unit_or_default(raw.get("viabilityScore"), 0.5),
                factors=factors,
                rationale=raw.get("rationale"),
                address=raw.get("address"),
            )
        )
    return candidates


def is_valid_candidate(candidate: LocationCandidate) -> bool:
    if candidate.lat == 0 or candidate.lng == 0:
        return False
    return candidate.viability_score >= MIN_SIGNAL and candidate.confidence >= MIN_SIGNAL


def enhanced_viability(candidate: LocationCandidate) -> float:
    """Blend the model's viability with its weighted factor scores."""

    total_weight = sum(factor.weight for factor in candidate.factors)
    if total_weight <= 0:
        return candidate.viability_score
    factor_average = sum(factor.score * factor.weight for factor in candidate.factors) / total_weight
    return BASE_VIABILITY_WEIGHT * candidate.viability_score + FACTOR_VIABILITY_WEIGHT * factor_average


def filter_candidates(
    candidates: Sequence[LocationCandidate],
    target_count: int,
    existing_stores: Sequence[Store] = (),
    constraints: Optional[DiscoveryConstraints] = None,
) -> List[LocationCandidate]:
    """Apply the quality floor, then greedy spacing, best viability first."""

    constraints = constraints or DiscoveryConstraints()
    qualified = [c for c in candidates if c.viability_score >= constraints.quality_threshold]
    qualified.sort(key=lambda c: c.viability_score, reverse=True)

    accepted: List[LocationCandidate] = []
    for candidate in qualified:
        if any(
            haversine_m(candidate.lat, candidate.lng, store.lat, store.lng) < constraints.min_distance_from_stores_m
            for store in existing_stores
        ):
            continue
        if any(
            haversine_m(candidate.lat, candidate.lng, kept.lat, kept.lng) < constraints.min_spacing_m
            for kept in accepted
        ):
            continue
        accepted.append(candidate)
        if len(accepted) >= target_count:
            break
    return accepted


def spatial_distribution(candidates: Sequence[LocationCandidate]) -> str:
    if len(candidates) < 3:
        return "SPARSE"
    average = mean_pairwise_distance_m([(c.lat, c.lng) for c in candidates])
    if average < CLUSTERED_BELOW_M:
        return "CLUSTERED"
    if average < DISTRIBUTED_BELOW_M:
        return "DISTRIBUTED"
    return "SPARSE"


def quality_metrics(candidates: Sequence[LocationCandidate]) -> Dict[str, Any]:
    scores = [c.viability_score for c in candidates]
    return {
        "total": len(candidates),
        "high_quality": sum(1 for score in scores if score > HIGH_QUALITY),
        "medium_quality": sum(1 for score in scores if MEDIUM_QUALITY <= score <= HIGH_QUALITY),
        "low_quality": sum(1 for score in scores if score < MEDIUM_QUALITY),
        "average_viability": (sum(scores) / len(scores)) if scores else 0.0,
        "average_confidence": (sum(c.confidence for c in candidates) / len(candidates)) if candidates else 0.0,
        "spatial_distribution": spatial_distribution(candidates),
    }


def batch_quality(candidates: Sequence[LocationCandidate]) -> float:
    if not candidates:
        return 0.0
    average_viability = sum(c.viability_score for c in candidates) / len(candidates)
    average_confidence = sum(c.confidence for c in candidates) / len(candidates)
    return 0.7 * average_viability + 0.3 * average_confidence


class LocationDiscoveryService:
    """Generate candidates zone by zone, in batches, then filter them."""

    def __init__(self, completion: Optional[CompletionService] = None) -> None:
        self.completion = completion or get_completion_service()

    async def _run_batch(
        self,
        batch_id: str,
        zone: StrategicZone,
        count: int,
        existing_stores: Sequence[Store],
        constraints: DiscoveryConstraints,
    ) -> DiscoveryBatch:
        prompt = build_discovery_prompt(zone, count, existing_stores, constraints)
        completion = await self.completion.complete(
            "location_discovery",
            build_messages(DISCOVERY_SYSTEM_PROMPT, prompt),
            schema=DISCOVERY_SCHEMA,
            schema_name="location_discovery",
            seed_context={"batch": batch_id, "zone": zone.model_dump(), "count": count},
            max_tokens=DISCOVERY_MAX_TOKENS,
            priority=5,
        )
        parsed = parse_candidates(completion.data, zone.id, batch_id)
        valid = []
        for candidate in parsed:
            if not is_valid_candidate(candidate):
                continue
            valid.append(candidate.model_copy(update={"viability_score": enhanced_viability(candidate)}))
        logger.debug("Batch %s: %d parsed, %d valid", batch_id, len(parsed), len(valid))
        return DiscoveryBatch(
            batch_id=batch_id,
            zone_id=zone.id,
            target=count,
            candidates=valid,
            quality=batch_quality(valid),
        )

    async def discover(
        self,
        zones: Sequence[StrategicZone],
        target_count: int,
        existing_stores: Sequence[Store] = (),
        constraints: Optional[DiscoveryConstraints] = None,
    ) -> DiscoveryResult:
        constraints = constraints or DiscoveryConstraints()
        plan = plan_batches(zones, target_count, constraints.batch_size)
        if not plan:
            return DiscoveryResult(candidates=[], batches=[], metrics=quality_metrics([]))

        # Each completion call takes its own concurrency slot.
        outcomes = await asyncio.gather(
            *(
                self._run_batch(batch_id, zone, count, existing_stores, constraints)
                for batch_id, zone, count in plan
            ),
            return_exceptions=True,
        )

        batches: List[DiscoveryBatch] = []
        pooled: List[LocationCandidate] = []
        for (batch_id, zone, count), outcome in zip(plan, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Discovery batch %s failed: %s", batch_id, outcome)
                batches.append(DiscoveryBatch(batch_id=batch_id, zone_id=zone.id, target=count, error=str(outcome)))
                continue
            batches.append(outcome)
            pooled.extend(outcome.candidates)

        candidates = filter_candidates(pooled, target_count, existing_stores, constraints)
        metrics = quality_metrics(candidates)
        metrics["batches"] = len(batches)
        metrics["failed_batches"] = sum(1 for batch in batches if batch.error)
        metrics["generated"] = len(pooled)
        logger.info(
            "Discovery produced %d/%d candidates from %d batches (%d failed)",
            len(candidates),
            target_count,
            len(batches),
            metrics["failed_batches"],
        )
        return DiscoveryResult(candidates=candidates, batches=batches, metrics=metrics)


__all__ = [
    "DiscoveryBatch",
    "DiscoveryConstraints",
    "DiscoveryResult",
    "LocationDiscoveryService",
    "allocate_zone_targets",
    "batch_quality",
    "build_discovery_prompt",
    "enhanced_viability",
    "filter_candidates",
    "is_valid_candidate",
    "parse_candidates",
    "plan_batches",
    "quality_metrics",
    "spatial_distribution",
]
