import asyncio

import pytest

from app.config.ai_settings import AI_MODEL_DEFAULT, AI_MODEL_ESCALATION
from app.services.expansion_models import ExclusionZone, LocationCandidate, LocationFactor, Store
from app.services.viability_service import (
    ViabilityConfig,
    ViabilityValidationService,
    distance_check,
    exclusion_check,
    has_critical_failure,
    infrastructure_check,
    needs_reassessment,
    run_checks,
    should_escalate,
    update_factors,
)
from conftest import FakeOpenAI, chat_response, make_completion_service

STORE = Store(id="s1", lat=48.85, lng=2.35)


class UpstreamError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code


def _candidate(candidate_id, viability, lat=48.90, lng=2.35, factors=None):
    return LocationCandidate(
        id=candidate_id,
        lat=lat,
        lng=lng,
        viability_score=viability,
        confidence=0.8,
        factors=factors or [],
    )


def test_distance_check_is_critical():
    close = _candidate("c", 0.8, lat=48.8545)

    check = distance_check(close, [STORE], 1000)

    assert check.critical is True
    assert check.passed is False
    assert check.score == pytest.approx(0.5, abs=0.01)
    assert distance_check(close, [], 1000).passed is True


def test_exclusion_check():
    zone = ExclusionZone(lat=48.90, lng=2.35, radius_m=300, reason="zone industrielle")

    assert exclusion_check(_candidate("c", 0.8), [zone]).passed is False
    assert exclusion_check(_candidate("c", 0.8, lat=48.95), [zone]).passed is True


def test_infrastructure_check_uses_relevant_factors():
    strong = _candidate("a", 0.8, factors=[LocationFactor(type="INFRASTRUCTURE", score=0.8, weight=1.0)])
    weak = _candidate("b", 0.8, factors=[LocationFactor(type="ACCESSIBILITY", score=0.5, weight=0.5)])

    assert infrastructure_check(strong).score == pytest.approx(0.8)
    assert infrastructure_check(_candidate("c", 0.8)).score == 0.5
    assert infrastructure_check(weak).passed is False


def test_reassessment_and_escalation_rules():
    config = ViabilityConfig()
    clean = run_checks(_candidate("c", 0.9), [STORE], config)
    failing = run_checks(_candidate("c", 0.9, lat=48.851), [STORE], config)

    assert [check.type for check in clean] == [
        "DISTANCE_FROM_EXISTING",
        "ROAD_ACCESS",
        "POPULATION_DENSITY",
        "EXCLUSION_ZONE",
        "INFRASTRUCTURE",
    ]
    assert not needs_reassessment(_candidate("c", 0.9), clean)
    assert needs_reassessment(_candidate("c", 0.5), clean)
    assert has_critical_failure(failing)
    assert needs_reassessment(_candidate("c", 0.9), failing)
    assert should_escalate(_candidate("c", 0.65), clean)
    assert not should_escalate(_candidate("c", 0.9), clean)
    assert should_escalate(_candidate("c", 0.9), failing)


def test_update_factors_merges_check_scores():
    candidate = _candidate("c", 0.8, factors=[LocationFactor(type="ACCESSIBILITY", score=0.6, weight=0.5)])
    checks = run_checks(candidate, [], ViabilityConfig())

    factors = {factor.type: factor for factor in update_factors(candidate, checks)}

    assert factors["ACCESSIBILITY"].score == pytest.approx(0.8625)
    assert factors["COMPETITION"].weight == 0.8
    assert factors["DEMOGRAPHICS"].score == pytest.approx(0.8)
    assert factors["INFRASTRUCTURE"].score == pytest.approx(0.3)
    assert candidate.factors[0].score == 0.6


def test_exclusion_zone_drags_accessibility_down():
    candidate = _candidate("c", 0.8, factors=[LocationFactor(type="ACCESSIBILITY", score=0.6, weight=0.5)])
    config = ViabilityConfig(exclusion_zones=[ExclusionZone(lat=48.90, lng=2.35, radius_m=300)])
    checks = run_checks(candidate, [], config)

    factors = {factor.type: factor for factor in update_factors(candidate, checks)}

    assert factors["ACCESSIBILITY"].score == pytest.approx(0.3625)


def test_validate_reassesses_borderline_and_failing_candidates():
    client = FakeOpenAI(chat_response({"viabilityScore": 0.75, "reasoning": "Emplacement correct"}))
    service = ViabilityValidationService(make_completion_service(client))
    candidates = [
        _candidate("borderline", 0.45),
        _candidate("strong", 0.9, lat=48.95),
        _candidate("on-store", 0.9, lat=48.851),
    ]

    results, metrics = asyncio.run(service.validate(candidates, [STORE]))

    by_id = {result.candidate.id: result for result in results}
    borderline = by_id["borderline"]
    assert borderline.ai_reassessed is True
    assert borderline.escalated is False
    assert borderline.original_score == 0.45
    assert borderline.candidate.viability_score == 0.75
    assert borderline.reasoning == "Emplacement correct"
    assert borderline.valid is True

    assert by_id["strong"].ai_reassessed is False
    assert by_id["strong"].valid is True

    on_store = by_id["on-store"]
    assert on_store.escalated is True
    assert on_store.valid is False

    models = sorted(call["model"] for call in client.completions.calls)
    assert models == sorted([AI_MODEL_DEFAULT, AI_MODEL_ESCALATION])
    assert metrics["total"] == 3
    assert metrics["passed"] == 2
    assert metrics["escalated"] == 1
    assert metrics["errors"] == 0


def test_failed_reassessment_keeps_original_score():
    service = ViabilityValidationService(make_completion_service(FakeOpenAI(UpstreamError(400))))

    result = asyncio.run(service.validate_candidate(_candidate("c", 0.5)))

    assert result.ai_reassessed is False
    assert result.candidate.viability_score == 0.5
    assert result.valid is True
