"""Regional market analysis and strategic zone derivation."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from app.services.ai_message_builder import build_messages
from app.services.cache_key_service import TTLCache
from app.services.completion_service import CompletionService, get_completion_service
from app.services.expansion_models import (
    Bounds,
    Competitor,
    MarketAnalysisResult,
    StrategicZone,
    Store,
)
from app.services.seed_manager import normalize_context

logger = logging.getLogger(__name__)

MARKET_ANALYSIS_MAX_TOKENS = 4000
SAMPLE_STORE_COUNT = 5
GAP_ZONE_THRESHOLD = 0.6
GAP_RADIUS_FACTOR_M = 5000
REVENUE_PER_STORE = 500000
GAP_CONFIDENCE_FACTOR = 0.8
STORES_PER_IMPACT = 5
OPPORTUNITY_MULTIPLIERS = {
    "demographic": 1.2,
    "geographic": 1.0,
    "competitive": 0.8,
    "infrastructure": 1.1,
}

MARKET_ANALYSIS_SYSTEM_PROMPT = """
Tu es un analyste immobilier spécialisé dans l'expansion de chaînes de restauration.
Analyse le marché décrit et réponds uniquement avec un objet JSON conforme au schéma fourni.
Règles :
- Les scores, impacts, tailles d'écart et pertinences sont compris entre 0 et 1.
- Chaque opportunité géographique doit inclure une position (lat, lng, rayon en mètres) située dans la zone analysée.
- N'invente pas de magasins ou de concurrents absents des données.
""".strip()

_UNIT = {"type": "number", "minimum": 0, "maximum": 1}
MARKET_ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": [
        "saturation",
        "opportunities",
        "competitiveGaps",
        "demographicInsights",
        "recommendations",
        "confidence",
    ],
    "properties": {
        "saturation": {
            "type": "object",
            "additionalProperties": False,
            "required": ["level", "score", "storeCount", "populationPerStore", "competitorDensity"],
            "properties": {
                "level": {"type": "string", "enum": ["low", "medium", "high", "oversaturated"]},
                "score": _UNIT,
                "storeCount": {"type": "integer", "minimum": 0},
                "populationPerStore": {"type": "number", "minimum": 0},
                "competitorDensity": {"type": "number", "minimum": 0},
            },
        },
        "opportunities": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["type", "description", "priority", "estimatedImpact", "location"],
                "properties": {
                    "type": {"type": "string", "enum": list(OPPORTUNITY_MULTIPLIERS)},
                    "description": {"type": "string"},
                    "priority": {"type": "string", "enum": ["high", "medium", "low"]},
                    "estimatedImpact": _UNIT,
                    "location": {
                        "type": ["object", "null"],
                        "additionalProperties": False,
                        "required": ["lat", "lng", "radius"],
                        "properties": {
                            "lat": {"type": "number"},
                            "lng": {"type": "number"},
                            "radius": {"type": "number", "minimum": 0},
                        },
                    },
                },
            },
        },
        "competitiveGaps": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["area", "competitors", "gapSize", "opportunity", "estimatedRevenue"],
                "properties": {
                    "area": {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["lat", "lng"],
                        "properties": {"lat": {"type": "number"}, "lng": {"type": "number"}},
                    },
                    "competitors": {"type": "array", "items": {"type": "string"}},
                    "gapSize": _UNIT,
                    "opportunity": {"type": "string"},
                    "estimatedRevenue": {"type": "number", "minimum": 0},
                },
            },
        },
        "demographicInsights": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["category", "insight", "relevance", "actionable"],
                "properties": {
                    "category": {"type": "string", "enum": ["age", "income", "lifestyle", "behavior"]},
                    "insight": {"type": "string"},
                    "relevance": _UNIT,
                    "actionable": {"type": "boolean"},
                },
            },
        },
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "confidence": _UNIT,
    },
}


class MarketAnalysisError(RuntimeError):
    """Raised when the model output cannot be turned into a market analysis."""


def region_cache_key(
    region: str,
    bounds: Bounds,
    stores: Sequence[Store],
    competitors: Sequence[Competitor],
    demographics: Optional[Dict[str, Any]],
) -> str:
    payload = {
        "region": region.strip().lower(),
        "bounds": bounds.model_dump(),
        "stores": sorted((round(store.lat, 5), round(store.lng, 5)) for store in stores),
        "competitors": sorted((comp.brand, round(comp.lat, 5), round(comp.lng, 5)) for comp in competitors),
        "demographics": demographics or {},
    }
    return hashlib.md5(normalize_context(payload).encode("utf-8")).hexdigest()


def build_market_prompt(
    region: str,
    bounds: Bounds,
    stores: Sequence[Store],
    competitors: Sequence[Competitor],
    demographics: Optional[Dict[str, Any]],
) -> str:
    lines = [
        f"Région : {region}",
        (
            "Limites : nord {0:.5f}, sud {1:.5f}, est {2:.5f}, ouest {3:.5f}".format(
                bounds.north, bounds.south, bounds.east, bounds.west
            )
        ),
        f"Magasins existants ({len(stores)}) :",
    ]
    for store in stores[:SAMPLE_STORE_COUNT]:
        label = store.name or store.id or "magasin"
        lines.append(f"- {label} ({store.lat:.5f}, {store.lng:.5f})")
    if len(stores) > SAMPLE_STORE_COUNT:
        lines.append(f"... et {len(stores) - SAMPLE_STORE_COUNT} autres")

    by_brand = Counter(comp.brand for comp in competitors)
    lines.append(f"Concurrents ({len(competitors)}) :")
    if by_brand:
        for brand, count in by_brand.most_common():
            lines.append(f"- {brand} : {count}")
    else:
        lines.append("- aucun concurrent connu")

    lines.append("Démographie :")
    if demographics:
        lines.append(json.dumps(demographics, ensure_ascii=False, sort_keys=True))
    else:
        lines.append("- données non disponibles")
    return "\n".join(lines)


def identify_strategic_zones(analysis: MarketAnalysisResult) -> List[StrategicZone]:
    """Turn high priority opportunities and large competitive gaps into zones."""

    zones: List[StrategicZone] = []
    for index, opportunity in enumerate(analysis.opportunities):
        if opportunity.priority != "high" or opportunity.location is None:
            continue
        multiplier = OPPORTUNITY_MULTIPLIERS.get(opportunity.type, 1.0)
        zones.append(
            StrategicZone(
                id=f"opportunity-{index}",
                center_lat=opportunity.location.lat,
                center_lng=opportunity.location.lng,
                radius_m=opportunity.location.radius,
                priority=opportunity.estimated_impact,
                estimated_stores=max(1, math.ceil(opportunity.estimated_impact * STORES_PER_IMPACT * multiplier)),
                confidence=analysis.confidence,
                source="opportunity",
                description=opportunity.description,
            )
        )

    for index, gap in enumerate(analysis.competitive_gaps):
        if gap.gap_size <= GAP_ZONE_THRESHOLD:
            continue
        zones.append(
            StrategicZone(
                id=f"gap-{index}",
                center_lat=gap.area.lat,
                center_lng=gap.area.lng,
                radius_m=gap.gap_size * GAP_RADIUS_FACTOR_M,
                priority=gap.gap_size,
                estimated_stores=max(1, math.ceil(gap.estimated_revenue / REVENUE_PER_STORE)),
                confidence=analysis.confidence * GAP_CONFIDENCE_FACTOR,
                source="gap",
                description=gap.opportunity,
            )
        )

    zones.sort(key=lambda zone: zone.priority, reverse=True)
    return zones


class MarketAnalysisService:
    """Ask the model for a structured view of a region's market."""

    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        *,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self.completion = completion or get_completion_service()
        self.cache = cache or TTLCache()
        self._analyses = 0
        self._cache_hits = 0
        self._computed = 0
        self._failures = 0
        self._total_ms = 0.0

    async def analyze(
        self,
        region: str,
        bounds: Bounds,
        stores: Sequence[Store],
        competitors: Sequence[Competitor] = (),
        demographics: Optional[Dict[str, Any]] = None,
    ) -> MarketAnalysisResult:
        key = region_cache_key(region, bounds, stores, competitors, demographics)
        cached = self.cache.get(key)
        self._analyses += 1
        if cached is not None:
            self._cache_hits += 1
            return cached.model_copy(update={"cached": True})

        started = time.monotonic()
        prompt = build_market_prompt(region, bounds, stores, competitors, demographics)
        messages = build_messages(MARKET_ANALYSIS_SYSTEM_PROMPT, prompt)
        try:
            completion = await self.completion.complete(
                "market_analysis",
                messages,
                schema=MARKET_ANALYSIS_SCHEMA,
                schema_name="market_analysis",
                seed_context={"region_key": key},
                max_tokens=MARKET_ANALYSIS_MAX_TOKENS,
                priority=10,
            )
            analysis = MarketAnalysisResult.model_validate({**completion.data, "region": region})
        except ValidationError as exc:
            self._failures += 1
            logger.warning("Market analysis payload rejected for %s: %s", region, exc)
            raise MarketAnalysisError("Market analysis response could not be parsed") from exc
        except Exception:
            self._failures += 1
            raise

        self._computed += 1
        self._total_ms += (time.monotonic() - started) * 1000
        self.cache.set(key, analysis)
        logger.info(
            "Market analysis for %s: saturation=%s opportunities=%d gaps=%d",
            region,
            analysis.saturation.level,
            len(analysis.opportunities),
            len(analysis.competitive_gaps),
        )
        return analysis

    def stats(self) -> Dict[str, Any]:
        return {
            "analyses": self._analyses,
            "cache_hits": self._cache_hits,
            "failures": self._failures,
            "cache_hit_rate": (self._cache_hits / self._analyses) if self._analyses else 0.0,
            "average_duration_ms": (self._total_ms / self._computed) if self._computed else 0.0,
        }


__all__ = [
    "MARKET_ANALYSIS_SCHEMA",
    "MarketAnalysisError",
    "MarketAnalysisService",
    "build_market_prompt",
    "identify_strategic_zones",
    "region_cache_key",
]
