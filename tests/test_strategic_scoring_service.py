import asyncio

import pytest

from app.config.ai_settings import AI_MODEL_FAST
from app.services.expansion_models import (
    LocationCandidate,
    MarketAnalysisResult,
    StrategicScore,
    StrategicZone,
    Store,
)
from app.services.strategic_scoring_service import (
    ScoringWeights,
    StrategicScoringService,
    basic_score,
    build_rankings,
    competitive_positioning,
    market_context,
    parse_ai_score,
    portfolio_recommendations,
    portfolio_summary,
    proximity_score,
    risk_level_for_score,
    weights_for_objectives,
)
from conftest import FakeOpenAI, chat_response, make_completion_service


class UpstreamError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code


ANALYSIS = MarketAnalysisResult.model_validate(
    {
        "region": "Paris",
        "saturation": {"level": "low", "score": 0.2},
        "opportunities": [
            {
                "type": "geographic",
                "priority": "high",
                "estimatedImpact": 0.7,
                "location": {"lat": 48.851, "lng": 2.351, "radius": 1000},
            }
        ],
        "competitiveGaps": [{"area": {"lat": 48.852, "lng": 2.352}, "gapSize": 0.8}],
        "demographicInsights": [
            {"category": "age", "insight": "Jeune", "relevance": 0.9, "actionable": True},
            {"category": "income", "insight": "Moyen", "relevance": 0.4, "actionable": True},
        ],
        "confidence": 0.8,
    }
)


def _candidate(candidate_id, viability=0.7, lat=48.85, lng=2.35):
    return LocationCandidate(id=candidate_id, lat=lat, lng=lng, viability_score=viability, confidence=0.8)


def _score(candidate_id, value, risk):
    return StrategicScore(candidate_id=candidate_id, lat=0.0, lng=0.0, strategic_score=value, risk_level=risk)


def test_weights_shift_with_objectives():
    default = weights_for_objectives(None)
    cautious = weights_for_objectives({"riskTolerance": "low"})

    assert default == ScoringWeights()
    total = cautious.saturation + cautious.proximity + cautious.demographic + cautious.viability
    assert total == pytest.approx(1.0)
    assert cautious.viability == pytest.approx(0.4 / 1.1)
    assert ScoringWeights(0, 0, 0, 0).normalized() == ScoringWeights()


def test_proximity_score_bands():
    assert proximity_score(None) == 0.8
    assert proximity_score(500) == 0.2
    assert proximity_score(1500) == 0.6
    assert proximity_score(3000) == 0.9
    assert proximity_score(8000) == 0.6
    assert proximity_score(15000) == 0.4


def test_market_context_uses_nearby_signals():
    zones = [StrategicZone(id="z", center_lat=48.85, center_lng=2.35, radius_m=2000)]

    context = market_context(_candidate("c"), ANALYSIS, zones)

    assert context["saturation_alignment"] == 0.9
    assert context["growth_alignment"] == pytest.approx(0.3)
    assert context["gap_alignment"] == pytest.approx(0.8)
    assert context["demographic_fit"] == pytest.approx(0.2)
    assert context["zone_alignment"] == 0.8
    assert market_context(_candidate("c"), None)["saturation_alignment"] == 0.5


def test_competitive_positioning_reports_threats_and_advantages():
    near_store = [Store(lat=48.8505, lng=2.35)]

    crowded = competitive_positioning(_candidate("c"), ANALYSIS, near_store)
    open_field = competitive_positioning(_candidate("c"), ANALYSIS)

    assert crowded["proximity_score"] == 0.2
    assert crowded["threats"]
    assert open_field["nearest_distance_m"] is None
    assert open_field["market_share_potential"] == 0.8
    assert open_field["differentiation"] == 0.7
    assert "Marché peu saturé" in open_field["advantages"]


def test_basic_score_is_weighted_average():
    candidate = _candidate("c", viability=0.8)
    context = market_context(candidate, None)
    positioning = competitive_positioning(candidate, None)

    score = basic_score(candidate, context, positioning, ScoringWeights())

    assert score.strategic_score == pytest.approx(0.565)
    assert score.risk_level == "MEDIUM"
    assert score.risk_score == pytest.approx(0.435)
    assert score.ai_scored is False
    assert risk_level_for_score(0.71) == "LOW"
    assert risk_level_for_score(0.4) == "HIGH"


def test_parse_ai_score_defaults_and_risk():
    candidate = _candidate("c")
    payload = {
        "strategicScore": 0.9,
        "riskLevel": None,
        "riskFactors": [
            {"type": "competition", "description": "x", "severity": 0.8, "likelihood": 0.5, "impact": None},
            {"type": None, "description": None, "severity": 0.4, "likelihood": 0.5, "impact": 0.3},
        ],
        "expectedRevenue": None,
        "rationale": "Bon emplacement",
    }

    score = parse_ai_score(payload, candidate, {}, {})

    assert score.ai_scored is True
    assert score.risk_level == "LOW"
    assert score.risk_score == pytest.approx(0.3)
    assert [factor.type for factor in score.risk_factors] == ["COMPETITION", "MARKET"]
    assert score.expected_revenue == 500000.0


def test_rankings_and_portfolio():
    scores = [_score("a", 0.9, "LOW"), _score("b", 0.65, "MEDIUM"), _score("c", 0.3, "HIGH"), _score("d", 0.75, "MEDIUM")]

    rankings = build_rankings(scores)

    assert [item.candidate_id for item in rankings["all"]] == ["a", "d", "b", "c"]
    assert [item.priority_rank for item in rankings["all"]] == [1, 2, 3, 4]
    assert [item.candidate_id for item in rankings["high_value"]] == ["a", "d"]
    assert [item.candidate_id for item in rankings["low_risk"]] == ["a"]
    assert [item.candidate_id for item in rankings["quick_wins"]] == ["a", "d", "b"]

    portfolio = portfolio_summary(rankings["all"])
    assert portfolio["distribution"] == {"immediate": 1, "near_term": 2, "long_term": 1}
    assert portfolio["total_investment"] == 1_000_000
    assert portfolio["roi"] == pytest.approx(2.0)
    assert portfolio["portfolio_risk"] == "MEDIUM"

    recommendations = portfolio_recommendations(portfolio, rankings)
    assert any("gain rapide" in line for line in recommendations)


def test_empty_portfolio_recommendation():
    rankings = build_rankings([])
    portfolio = portfolio_summary([])

    assert portfolio["distribution"] == {"immediate": 0, "near_term": 0, "long_term": 0}
    assert len(portfolio_recommendations(portfolio, rankings)) == 1


def _scoring_or_rationale(request):
    if "response_format" in request:
        return chat_response(
            {
                "strategicScore": 0.95,
                "riskLevel": "LOW",
                "riskFactors": [],
                "expectedRevenue": 900000,
                "rationale": "Excellent",
            }
        )
    return chat_response("Emplacement bien desservi, peu de concurrence.")


def test_service_scores_top_candidates_with_ai():
    client = FakeOpenAI(_scoring_or_rationale)
    service = StrategicScoringService(make_completion_service(client))
    candidates = [_candidate(f"c{i}", viability=0.5 + i * 0.05, lat=48.80 + i * 0.02) for i in range(5)]

    result = asyncio.run(service.score_and_rank(candidates, ANALYSIS))

    assert result["stats"] == {
        "ai_scored": 1,
        "ai_failed": 0,
        "basic_scored": 4,
        "ai_selected": 1,
        "ai_rationales": 4,
    }
    top = result["scores"][0]
    assert top.candidate_id == "c4"
    assert top.ai_scored is True
    assert top.expected_revenue == 900000
    assert top.rationale == "Excellent"
    assert len(client.completions.calls) == 5
    rationale_calls = [call for call in client.completions.calls if "response_format" not in call]
    assert {call["model"] for call in rationale_calls} == {AI_MODEL_FAST}
    assert all(
        score.rationale == "Emplacement bien desservi, peu de concurrence."
        for score in result["scores"]
        if not score.ai_scored
    )
    assert result["portfolio"]["candidate_count"] == 5


def test_service_falls_back_when_ai_fails():
    service = StrategicScoringService(make_completion_service(FakeOpenAI(UpstreamError(400))))

    scores, stats = asyncio.run(service.score_candidates([_candidate("a"), _candidate("b", lat=48.9)]))

    assert stats["ai_failed"] == 1
    assert stats["basic_scored"] == 2
    assert all(not score.ai_scored for score in scores)
    assert stats["ai_rationales"] == 0
    assert all(score.rationale.startswith("Cet emplacement") for score in scores)


def test_service_skips_ai_without_client():
    service = StrategicScoringService(make_completion_service(None))

    scores, stats = asyncio.run(service.score_candidates([_candidate("a")]))

    assert stats["ai_selected"] == 0
    assert scores[0].ai_scored is False
    assert scores[0].rationale.startswith("Cet emplacement")
