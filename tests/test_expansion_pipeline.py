import asyncio

import pytest

from app.services import expansion_pipeline_service
from app.services.expansion_models import Bounds, Store
from app.services.expansion_pipeline_service import (
    ExpansionPipeline,
    ExpansionPipelineError,
    ExpansionRequest,
    fallback_zone,
)
from conftest import FakeOpenAI, chat_response, make_completion_service

BOUNDS = Bounds(north=48.95, south=48.75, east=2.45, west=2.25)


class UpstreamError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code


MARKET = {
    "saturation": {
        "level": "low",
        "score": 0.2,
        "storeCount": 1,
        "populationPerStore": 2000000,
        "competitorDensity": 0.5,
    },
    "opportunities": [
        {
            "type": "geographic",
            "description": "Centre-ville",
            "priority": "high",
            "estimatedImpact": 0.8,
            "location": {"lat": 48.85, "lng": 2.35, "radius": 3000},
        }
    ],
    "competitiveGaps": [],
    "demographicInsights": [],
    "recommendations": [],
    "confidence": 0.8,
}


def _fake_openai(fail_market=False):
    def respond(request):
        if "response_format" not in request:
            return chat_response("Emplacement central et bien desservi.")
        name = request["response_format"]["json_schema"]["name"]
        if name == "market_analysis":
            if fail_market:
                raise UpstreamError(400)
            return chat_response(MARKET)
        if name == "location_discovery":
            prompt = request["messages"][-1]["content"]
            count = int(prompt.split("Propose ", 1)[1].split(" ", 1)[0])
            return chat_response(
                {
                    "candidates": [
                        {
                            "lat": 48.82 + index * 0.02,
                            "lng": 2.35,
                            "confidence": 0.8,
                            "viabilityScore": 0.8,
                            "rationale": None,
                            "address": None,
                            "factors": None,
                        }
                        for index in range(count)
                    ]
                }
            )
        if name == "viability_reassessment":
            return chat_response({"viabilityScore": 0.8, "reasoning": "Confirmé"})
        return chat_response(
            {
                "strategicScore": 0.85,
                "riskLevel": "LOW",
                "riskFactors": [],
                "expectedRevenue": 750000,
                "rationale": "Fort potentiel",
            }
        )

    return FakeOpenAI(respond)


def _request(**overrides):
    options = {
        "region": "Paris",
        "bounds": BOUNDS,
        "existing_stores": [Store(id="s1", lat=48.70, lng=2.35)],
        "target_candidates": 5,
    }
    options.update(overrides)
    return ExpansionRequest(**options)


def test_resolved_target():
    assert _request().resolved_target() == 5
    assert _request(target_candidates=None, aggression=85).resolved_target() == 300
    assert _request(target_candidates=None).resolved_target() == 150


def test_fallback_zone_sits_at_bounds_center():
    zone = fallback_zone(BOUNDS)

    assert zone.center_lat == pytest.approx(48.85)
    assert zone.center_lng == pytest.approx(2.35)
    assert zone.radius_m == 10000
    assert zone.source == "fallback"


def test_pipeline_runs_every_stage():
    client = _fake_openai()
    pipeline = ExpansionPipeline(make_completion_service(client), persist=False)

    result = asyncio.run(pipeline.execute(_request()))

    assert result["errors"] == []
    assert len(result["candidates"]) == 5
    assert [zone["id"] for zone in result["zones"]] == ["opportunity-0"]
    metadata = result["metadata"]
    assert metadata["stages_executed"] == [
        "market_analysis",
        "zone_identification",
        "location_discovery",
        "viability_validation",
        "strategic_scoring",
    ]
    assert metadata["successful_operations"] == 5
    assert metadata["failed_operations"] == 0
    assert metadata["ai_calls"] == 12
    assert metadata["total_tokens"] == 12 * 200
    assert result["quality_metrics"]["validated"] == 5
    assert result["quality_metrics"]["scoring"]["ai_scored"] == 1
    assert result["quality_metrics"]["scoring"]["ai_rationales"] == 4
    top = result["candidates"][0]
    assert top["aiScored"] is True
    assert top["priorityRank"] == 1
    assert result["rankings"]["top"][0] == top["candidateId"]
    assert result["portfolio"]["candidate_count"] == 5


def test_market_failure_falls_back_to_bounds_zone():
    pipeline = ExpansionPipeline(make_completion_service(_fake_openai(fail_market=True)), persist=False)

    result = asyncio.run(pipeline.execute(_request()))

    assert [error["stage"] for error in result["errors"]] == ["market_analysis"]
    assert result["market_analysis"] is None
    assert result["zones"][0]["source"] == "fallback"
    assert result["metadata"]["failed_operations"] == 1
    assert len(result["candidates"]) == 5


def test_blank_region_is_rejected():
    pipeline = ExpansionPipeline(make_completion_service(_fake_openai()), persist=False)

    with pytest.raises(ExpansionPipelineError):
        asyncio.run(pipeline.execute(_request(region="  ")))


def test_persisted_run_carries_the_tenant(monkeypatch):
    saved = []

    def fake_save(result, *, tenant_id=None):
        saved.append((result["run_id"], tenant_id))
        return True

    monkeypatch.setattr(expansion_pipeline_service, "save_expansion_run", fake_save)
    pipeline = ExpansionPipeline(make_completion_service(_fake_openai()), persist=True)

    result = asyncio.run(pipeline.execute(_request(tenant_id="tenant-1")))

    assert saved == [(result["run_id"], "tenant-1")]
