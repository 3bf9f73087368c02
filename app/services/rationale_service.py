"""Short written rationales explaining why a location is worth opening."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from app.config.ai_settings import (
    AI_MODEL_FAST,
    AI_RATIONALE_CACHE_TTL_DAYS,
    AI_RATIONALE_MAX_TOKENS,
    MAX_CACHE_ENTRIES,
)
from app.services.ai_message_builder import build_messages
from app.services.cache_key_service import TTLCache
from app.services.completion_service import AIUnavailableError, CompletionService, get_completion_service
from app.services.seed_manager import create_cache_key_with_seed

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
FALLBACK_CONFIDENCE = 0.3
MetricValue = Union[float, str, None]

RATIONALE_SYSTEM_PROMPT = """
Tu es analyste spécialisé dans le choix d'emplacements de restaurants.
Rédige une justification concise de deux à trois phrases, fondée sur les facteurs fournis.
Quand une donnée est marquée "inconnue", signale la limite puis appuie-toi sur les données disponibles.
""".strip()


@dataclass
class RationaleContext:
    lat: float
    lng: float
    population_score: float
    proximity_score: float
    turnover_score: float
    urban_density: Optional[float] = None
    road_distance_m: Optional[float] = None
    building_distance_m: Optional[float] = None
    nearest_store_km: MetricValue = None
    trade_area_population: MetricValue = None
    proximity_gap_percentile: MetricValue = None
    turnover_percentile: MetricValue = None


class RationaleOutput(BaseModel):
    text: str
    factors: Dict[str, str] = Field(default_factory=dict)
    confidence: float = 0.5
    data_completeness: float = 0.5
    source: str = "ai"


def _known(value: MetricValue) -> bool:
    return value is not None and value != UNKNOWN


def _has_detailed_metrics(context: RationaleContext) -> bool:
    return any(
        value is not None
        for value in (
            context.nearest_store_km,
            context.trade_area_population,
            context.proximity_gap_percentile,
            context.turnover_percentile,
        )
    )


def data_completeness(context: RationaleContext) -> float:
    """Share of the optional metrics that are actually known."""

    optional = [
        context.nearest_store_km,
        context.trade_area_population,
        context.proximity_gap_percentile,
        context.turnover_percentile,
        context.urban_density,
        context.road_distance_m,
        context.building_distance_m,
    ]
    return sum(1 for value in optional if _known(value)) / len(optional)


def context_hash(context: RationaleContext) -> str:
    def metric(value: MetricValue) -> str:
        return UNKNOWN if value == UNKNOWN else str(value or 0)

    base = ",".join(
        [
            f"{context.lat:.5f}",
            f"{context.lng:.5f}",
            f"{context.population_score:.2f}",
            f"{context.proximity_score:.2f}",
            f"{context.turnover_score:.2f}",
            f"{context.urban_density or 0:.2f}",
            str(context.road_distance_m or 0),
            str(context.building_distance_m or 0),
            metric(context.nearest_store_km),
            metric(context.trade_area_population),
            metric(context.proximity_gap_percentile),
            metric(context.turnover_percentile),
        ]
    )
    return hashlib.md5(base.encode("utf-8")).hexdigest()


def describe_population(score: float, population: MetricValue = None) -> str:
    if population == UNKNOWN:
        return f"Données de population indisponibles (score : {score * 100:.0f} %)"
    suffix = f" ({population:,.0f} habitants)" if population else ""
    if score > 0.7:
        return "Zone à forte densité de population" + suffix
    if score > 0.5:
        return "Densité de population modérée" + suffix
    return "Densité de population plus faible" + suffix


def describe_proximity(score: float, distance_km: MetricValue = None) -> str:
    if distance_km == UNKNOWN:
        return f"Données de proximité indisponibles (score : {score * 100:.0f} %)"
    if score > 0.7:
        suffix = f" ({distance_km:.1f} km du restaurant le plus proche)" if distance_km else ""
        return "Couverture du réseau nettement insuffisante" + suffix
    if score > 0.5:
        suffix = f" ({distance_km:.1f} km du restaurant le plus proche)" if distance_km else ""
        return "Couverture du réseau partielle" + suffix
    suffix = f" (à {distance_km:.1f} km)" if distance_km else ""
    return "Proche de restaurants existants" + suffix


def describe_turnover(score: float, percentile: MetricValue = None) -> str:
    if percentile == UNKNOWN:
        return f"Données de ventes indisponibles (score : {score * 100:.0f} %)"
    suffix = f" ({percentile:.0f}e centile)" if percentile else ""
    if score > 0.7:
        return "Fort potentiel de ventes" + suffix
    if score > 0.5:
        return "Bon potentiel de ventes" + suffix
    return "Potentiel de ventes modéré" + suffix


def describe_factors(context: RationaleContext) -> Dict[str, str]:
    return {
        "population": describe_population(context.population_score, context.trade_area_population),
        "proximity": describe_proximity(context.proximity_score, context.nearest_store_km),
        "turnover": describe_turnover(context.turnover_score, context.turnover_percentile),
    }


def _metric_line(label: str, value: MetricValue, rendered: str) -> Optional[str]:
    if value == UNKNOWN:
        return f"{label} : inconnue (donnée non disponible)"
    if value is None:
        return None
    return f"{label} : {rendered}"


def build_rationale_prompt(context: RationaleContext) -> str:
    lines = [
        "Explique en deux à trois phrases pourquoi cet emplacement convient à un nouveau restaurant.",
        "Couvre la population, la proximité du réseau et le potentiel de ventes.",
        "",
        f"Emplacement : {context.lat:.4f}, {context.lng:.4f}",
        "",
        "SCORES :",
        f"Population : {context.population_score * 100:.0f} %",
        f"Écart de couverture : {context.proximity_score * 100:.0f} %",
        f"Potentiel de ventes : {context.turnover_score * 100:.0f} %",
        "",
    ]
    detailed = _has_detailed_metrics(context)
    if detailed:
        lines.append("INDICATEURS DÉTAILLÉS :")
        candidates = [
            _metric_line(
                "Distance au restaurant le plus proche",
                context.nearest_store_km,
                f"{context.nearest_store_km:.1f} km" if _known(context.nearest_store_km) else "",
            ),
            _metric_line(
                "Population de la zone de chalandise",
                context.trade_area_population,
                f"{context.trade_area_population:,.0f}" if _known(context.trade_area_population) else "",
            ),
            _metric_line(
                "Centile d'écart de couverture",
                context.proximity_gap_percentile,
                f"{context.proximity_gap_percentile:.0f}e" if _known(context.proximity_gap_percentile) else "",
            ),
            _metric_line(
                "Centile de chiffre d'affaires",
                context.turnover_percentile,
                f"{context.turnover_percentile:.0f}e" if _known(context.turnover_percentile) else "",
            ),
        ]
        lines.extend(line for line in candidates if line)
    if context.urban_density is not None:
        lines.append(f"Indice de densité urbaine : {context.urban_density:.2f}")
    if context.road_distance_m is not None:
        lines.append(f"Accès routier : à {context.road_distance_m:.0f} m d'une route")
    if context.building_distance_m is not None:
        lines.append(f"Bâti : à {context.building_distance_m:.0f} m des bâtiments")
    lines.append("")
    lines.append("Reste factuel et concret, centré sur la valeur commerciale de l'emplacement.")
    if detailed:
        lines.append("Mentionne les données inconnues sans t'y attarder.")
    return "\n".join(lines)


def fallback_rationale(context: RationaleContext) -> RationaleOutput:
    """Deterministic rationale built from the scores alone."""

    strengths: List[str] = []
    if context.population_score > 0.7:
        strengths.append("une forte densité de population")
    elif context.population_score > 0.5:
        strengths.append("une densité de population modérée")
    if context.proximity_score > 0.7:
        strengths.append("un net manque de couverture du réseau")
    elif context.proximity_score > 0.5:
        strengths.append("une marge d'expansion sur le marché")
    if context.turnover_score > 0.7:
        strengths.append("un fort potentiel de ventes")
    elif context.turnover_score > 0.5:
        strengths.append("un bon potentiel de ventes")
    if context.urban_density and context.urban_density > 0.6:
        strengths.append("un environnement urbain bien équipé")

    if strengths:
        text = (
            f"Cet emplacement est recommandé pour {', '.join(strengths)}. "
            "Le site est accessible et cohérent avec les critères d'expansion."
        )
    else:
        text = "Cet emplacement présente un potentiel d'expansion au vu de l'analyse de marché et des facteurs démographiques."
    return RationaleOutput(
        text=text,
        factors=describe_factors(context),
        confidence=FALLBACK_CONFIDENCE,
        data_completeness=data_completeness(context),
        source="fallback",
    )


class RationaleService:
    """Generate, cache and fall back on location rationales."""

    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        *,
        model: str = AI_MODEL_FAST,
        max_tokens: int = AI_RATIONALE_MAX_TOKENS,
        cache: Optional[TTLCache] = None,
        enable_fallback: bool = True,
    ) -> None:
        self.completion = completion or get_completion_service()
        self.model = model
        self.max_tokens = max_tokens
        self.cache = cache or TTLCache(
            max_entries=MAX_CACHE_ENTRIES,
            ttl_seconds=AI_RATIONALE_CACHE_TTL_DAYS * 86400,
        )
        self.enable_fallback = enable_fallback
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
        self.fallbacks = 0
        self.total_tokens = 0

    def cache_key(self, context: RationaleContext) -> str:
        seed = self.completion.seeds.get_seed(asdict(context))
        return create_cache_key_with_seed(f"rationale|{context_hash(context)}", seed)

    def _fallback(self, context: RationaleContext, reason: str) -> RationaleOutput:
        if not self.enable_fallback:
            raise AIUnavailableError(reason)
        self.fallbacks += 1
        return fallback_rationale(context)

    async def generate(self, context: RationaleContext, *, allow_ai: bool = True) -> RationaleOutput:
        key = self.cache_key(context)
        cached = self.cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            return cached
        self.cache_misses += 1

        if not allow_ai:
            self.fallbacks += 1
            return fallback_rationale(context)
        if not self.completion.available:
            logger.debug("No OpenAI client; fallback rationale for %.4f, %.4f", context.lat, context.lng)
            return self._fallback(context, "OPENAI_API_KEY is not configured.")

        try:
            result = await self.completion.complete(
                "rationale",
                build_messages(RATIONALE_SYSTEM_PROMPT, build_rationale_prompt(context)),
                seed_context=asdict(context),
                model=self.model,
                max_tokens=self.max_tokens,
                use_cache=False,
            )
        except Exception as exc:
            logger.warning("Rationale generation failed for %.4f, %.4f: %s", context.lat, context.lng, exc)
            if not self.enable_fallback:
                raise
            self.fallbacks += 1
            return fallback_rationale(context)

        self.api_calls += 1
        self.total_tokens += result.usage.get("total_tokens", 0)
        completeness = data_completeness(context)
        average = (context.population_score + context.proximity_score + context.turnover_score) / 3
        output = RationaleOutput(
            text=result.text.strip(),
            factors=describe_factors(context),
            confidence=average * completeness,
            data_completeness=completeness,
        )
        self.cache.set(key, output)
        return output

    def stats(self) -> Dict[str, Any]:
        lookups = self.cache_hits + self.cache_misses
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "hit_rate": round(self.cache_hits / lookups * 100, 2) if lookups else 0.0,
            "api_calls": self.api_calls,
            "fallbacks": self.fallbacks,
            "total_tokens": self.total_tokens,
        }

    def reset_stats(self) -> None:
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
        self.fallbacks = 0
        self.total_tokens = 0


__all__ = [
    "RationaleContext",
    "RationaleOutput",
    "RationaleService",
    "build_rationale_prompt",
    "context_hash",
    "data_completeness",
    "describe_factors",
    "fallback_rationale",
]
