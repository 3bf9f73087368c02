"""Typed objects shared by the expansion intelligence services."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

FactorType = Literal[
    "POPULATION_DENSITY",
    "FOOT_TRAFFIC",
    "ACCESSIBILITY",
    "COMPETITION",
    "DEMOGRAPHICS",
    "INFRASTRUCTURE",
]
FACTOR_TYPES = (
    "POPULATION_DENSITY",
    "FOOT_TRAFFIC",
    "ACCESSIBILITY",
    "COMPETITION",
    "DEMOGRAPHICS",
    "INFRASTRUCTURE",
)
RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]


def _clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Bounds(CamelModel):
    north: float = Field(ge=-90, le=90)
    south: float = Field(ge=-90, le=90)
    east: float = Field(ge=-180, le=180)
    west: float = Field(ge=-180, le=180)

    @property
    def center(self) -> Dict[str, float]:
        return {"lat": (self.north + self.south) / 2, "lng": (self.east + self.west) / 2}


class Store(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    lat: float
    lng: float
    city: Optional[str] = None


class Competitor(CamelModel):
    brand: str = "unknown"
    lat: float
    lng: float


class ExclusionZone(CamelModel):
    lat: float
    lng: float
    radius_m: float = Field(default=500.0, alias="radiusM", gt=0)
    reason: Optional[str] = None


class LocationFactor(CamelModel):
    type: FactorType = "ACCESSIBILITY"
    score: float = 0.5
    weight: float = 0.5
    description: Optional[str] = None

    @field_validator("score", "weight", mode="before")
    @classmethod
    def _unit_interval(cls, value: Any) -> float:
        return _clamp_unit(value)


class LocationCandidate(CamelModel):
    id: str
    lat: float
    lng: float
    zone_id: Optional[str] = Field(default=None, alias="zoneId")
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    confidence: float = 0.5
    viability_score: float = Field(default=0.5, alias="viabilityScore")
    factors: List[LocationFactor] = Field(default_factory=list)
    rationale: Optional[str] = None
    address: Optional[str] = None


class StrategicZone(CamelModel):
    id: str
    center_lat: float = Field(alias="centerLat")
    center_lng: float = Field(alias="centerLng")
    radius_m: float = Field(default=5000.0, alias="radiusM")
    priority: float = 0.5
    estimated_stores: int = Field(default=1, alias="estimatedStores")
    confidence: float = 0.5
    source: Literal["opportunity", "gap", "fallback"] = "opportunity"
    description: Optional[str] = None
    polygon: Optional[List[List[float]]] = None


class MarketSaturation(CamelModel):
    level: Literal["low", "medium", "high", "oversaturated"] = "medium"
    score: float = 0.5
    store_count: int = Field(default=0, alias="storeCount")
    population_per_store: float = Field(default=0.0, alias="populationPerStore")
    competitor_density: float = Field(default=0.0, alias="competitorDensity")


class OpportunityLocation(CamelModel):
    lat: float
    lng: float
    radius: float = 5000.0


class MarketOpportunity(CamelModel):
    type: Literal["demographic", "geographic", "competitive", "infrastructure"]
    description: str = ""
    priority: Literal["high", "medium", "low"] = "medium"
    estimated_impact: float = Field(default=0.5, alias="estimatedImpact")
    location: Optional[OpportunityLocation] = None


class GapArea(CamelModel):
    lat: float
    lng: float


class CompetitiveGap(CamelModel):
    area: GapArea
    competitors: List[str] = Field(default_factory=list)
    gap_size: float = Field(default=0.0, alias="gapSize")
    opportunity: str = ""
    estimated_revenue: float = Field(default=0.0, alias="estimatedRevenue")


class DemographicInsight(CamelModel):
    category: Literal["age", "income", "lifestyle", "behavior"]
    insight: str = ""
    relevance: float = 0.5
    actionable: bool = False


class MarketAnalysisResult(CamelModel):
    region: str = ""
    saturation: MarketSaturation = Field(default_factory=MarketSaturation)
    opportunities: List[MarketOpportunity] = Field(default_factory=list)
    competitive_gaps: List[CompetitiveGap] = Field(default_factory=list, alias="competitiveGaps")
    demographic_insights: List[DemographicInsight] = Field(default_factory=list, alias="demographicInsights")
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = 0.5
    cached: bool = False


class ViabilityCheck(CamelModel):
    type: str
    passed: bool
    score: float
    critical: bool = False
    details: str = ""


class ViabilityResult(CamelModel):
    candidate: LocationCandidate
    checks: List[ViabilityCheck] = Field(default_factory=list)
    valid: bool = True
    original_score: float = Field(alias="originalScore")
    escalated: bool = False
    ai_reassessed: bool = Field(default=False, alias="aiReassessed")
    reasoning: Optional[str] = None


class RiskFactor(CamelModel):
    type: str = "MARKET"
    description: str = ""
    severity: float = 0.5
    likelihood: float = 0.5
    impact: float = 0.5


class StrategicScore(CamelModel):
    candidate_id: str = Field(alias="candidateId")
    lat: float
    lng: float
    strategic_score: float = Field(default=0.5, alias="strategicScore")
    viability_score: float = Field(default=0.5, alias="viabilityScore")
    market_context: Dict[str, float] = Field(default_factory=dict, alias="marketContext")
    competitive_positioning: Dict[str, Any] = Field(default_factory=dict, alias="competitivePositioning")
    risk_level: RiskLevel = Field(default="MEDIUM", alias="riskLevel")
    risk_score: float = Field(default=0.5, alias="riskScore")
    risk_factors: List[RiskFactor] = Field(default_factory=list, alias="riskFactors")
    expected_revenue: float = Field(default=500000.0, alias="expectedRevenue")
    rationale: Optional[str] = None
    ai_scored: bool = Field(default=False, alias="aiScored")
    priority_rank: Optional[int] = Field(default=None, alias="priorityRank")


__all__ = [
    "Bounds",
    "CompetitiveGap",
    "Competitor",
    "DemographicInsight",
    "ExclusionZone",
    "FACTOR_TYPES",
    "LocationCandidate",
    "LocationFactor",
    "MarketAnalysisResult",
    "MarketOpportunity",
    "MarketSaturation",
    "RiskFactor",
    "StrategicScore",
    "StrategicZone",
    "Store",
    "ViabilityCheck",
    "ViabilityResult",
]
