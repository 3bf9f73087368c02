from typing import Any, Dict, List, Literal, Optional, Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

from app.services.expansion_models import Bounds, Competitor, ExclusionZone, Store


class BusinessObjectives(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    risk_tolerance: Literal["LOW", "MEDIUM", "HIGH"] = Field(default="MEDIUM", alias="riskTolerance")
    expansion_speed: Literal["CONSERVATIVE", "MODERATE", "AGGRESSIVE"] = Field(
        default="MODERATE", alias="expansionSpeed"
    )
    market_priorities: List[str] = Field(default_factory=list, alias="marketPriorities")

    @model_validator(mode="before")
    @classmethod
    def _uppercase_levels(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        for key in ("riskTolerance", "risk_tolerance", "expansionSpeed", "expansion_speed"):
            value = normalized.get(key)
            if isinstance(value, str):
                normalized[key] = value.strip().upper()
        return normalized


class PipelineExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    region: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
    bounds: Bounds
    existing_stores: List[Store] = Field(default_factory=list, alias="existingStores")
    competitors: List[Competitor] = Field(default_factory=list)
    demographics: Optional[Dict[str, Any]] = None
    target_candidates: Optional[int] = Field(default=None, alias="targetCandidates", ge=1, le=500)
    aggression: Optional[float] = Field(default=None, ge=0, le=100)
    min_distance_m: float = Field(default=1000.0, alias="minDistanceM", gt=0)
    exclusion_zones: List[ExclusionZone] = Field(default_factory=list, alias="exclusionZones")
    business_objectives: BusinessObjectives = Field(default_factory=BusinessObjectives, alias="businessObjectives")

    @model_validator(mode="after")
    def _check_bounds(self) -> "PipelineExecuteRequest":
        if self.bounds.north <= self.bounds.south:
            raise ValueError("bounds.north must be greater than bounds.south")
        return self


class PipelineMetadata(BaseModel):
    stages_executed: List[str]
    stage_durations_ms: Dict[str, float]
    total_tokens: int
    total_cost_usd: float
    ai_calls: int
    successful_operations: int
    failed_operations: int


class PipelineExecuteResponse(BaseModel):
    run_id: str
    region: str
    target_candidates: int
    candidates: List[Dict[str, Any]]
    rankings: Dict[str, List[str]]
    portfolio: Dict[str, Any]
    recommendations: List[str]
    market_analysis: Optional[Dict[str, Any]] = None
    zones: List[Dict[str, Any]]
    metadata: PipelineMetadata
    quality_metrics: Dict[str, Any]
    errors: List[Dict[str, str]]


class AIAlert(BaseModel):
    type: str
    severity: Literal["INFO", "WARNING", "ERROR", "CRITICAL"]
    message: str


class AIStatsResponse(BaseModel):
    performance: Dict[str, Any]
    alerts: List[AIAlert]
    completion: Dict[str, Any]
    concurrency: Dict[str, Any]


class ExpansionRunSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    region: Optional[str] = None
    candidate_count: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    created_at: Optional[str] = None
