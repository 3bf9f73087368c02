from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient
from postgrest import APIError as PostgrestAPIError

from app.api.routes import expansion as expansion_routes
from app.main import app
from app.security.guards import reset_rate_limits
from app.services import expansion_pipeline_service
from app.services.expansion_pipeline_service import ExpansionPipelineError
from conftest import FakeOpenAI, make_completion_service

AUTH = {"Authorization": "Bearer test-token"}

PAYLOAD = {
    "region": "Paris",
    "bounds": {"north": 48.95, "south": 48.75, "east": 2.45, "west": 2.25},
    "existingStores": [{"id": "s1", "lat": 48.70, "lng": 2.35}],
    "targetCandidates": 5,
    "businessObjectives": {"riskTolerance": "low", "expansionSpeed": "aggressive"},
}


class FakePipeline:
    def __init__(self, completion, error: Exception = None):
        self.completion = completion
        self.error = error
        self.requests: List[Any] = []

    async def execute(self, request) -> Dict[str, Any]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return {
            "run_id": "run-1",
            "region": request.region,
            "target_candidates": request.resolved_target(),
            "candidates": [{"candidateId": "c1", "strategicScore": 0.8}],
            "rankings": {"top": ["c1"], "high_value": ["c1"], "low_risk": [], "quick_wins": ["c1"]},
            "portfolio": {"candidate_count": 1},
            "recommendations": ["Lancer en priorité 1 emplacement(s) à gain rapide."],
            "market_analysis": None,
            "zones": [],
            "metadata": {
                "stages_executed": ["market_analysis"],
                "stage_durations_ms": {"market_analysis": 12.5},
                "total_tokens": 200,
                "total_cost_usd": 0.0002,
                "ai_calls": 1,
                "successful_operations": 1,
                "failed_operations": 0,
            },
            "quality_metrics": {},
            "errors": [],
        }


@pytest.fixture(name="pipeline")
def pipeline_fixture(monkeypatch):
    pipeline = FakePipeline(make_completion_service(FakeOpenAI()))
    monkeypatch.setattr(expansion_pipeline_service, "_default_pipeline", pipeline)
    monkeypatch.setattr(expansion_routes, "resolve_tenant_id", lambda token: "tenant-1")
    reset_rate_limits()
    yield pipeline
    reset_rate_limits()


@pytest.fixture(name="api_client")
def client_fixture(pipeline):
    with TestClient(app) as client:
        yield client


def test_health(api_client: TestClient) -> None:
    assert api_client.get("/health").json() == {"status": "ok"}


def test_execute_requires_bearer_token(api_client: TestClient) -> None:
    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD)

    assert response.status_code == 401


def test_execute_runs_pipeline(api_client: TestClient, pipeline: FakePipeline) -> None:
    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["run_id"] == "run-1"
    assert body["target_candidates"] == 5
    assert body["rankings"]["top"] == ["c1"]
    request = pipeline.requests[0]
    assert request.existing_stores[0].id == "s1"
    assert request.business_objectives["risk_tolerance"] == "LOW"
    assert request.business_objectives["expansion_speed"] == "AGGRESSIVE"
    assert request.tenant_id == "tenant-1"


def test_execute_requires_a_tenant(api_client: TestClient, pipeline: FakePipeline, monkeypatch) -> None:
    monkeypatch.setattr(expansion_routes, "resolve_tenant_id", lambda token: None)

    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "Aucun tenant associé à ce compte."
    assert pipeline.requests == []


def test_execute_rejects_inverted_bounds(api_client: TestClient) -> None:
    payload = dict(PAYLOAD, bounds={"north": 48.70, "south": 48.95, "east": 2.45, "west": 2.25})

    response = api_client.post("/api/expansion/pipeline/execute", json=payload, headers=AUTH)

    assert response.status_code == 422


def test_execute_maps_pipeline_errors(api_client: TestClient, pipeline: FakePipeline) -> None:
    pipeline.error = ExpansionPipelineError("Region is required")

    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "Region is required"


def test_execute_without_ai_returns_503(api_client: TestClient, pipeline: FakePipeline) -> None:
    pipeline.completion = make_completion_service(None)

    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=AUTH)

    assert response.status_code == 503


def test_execute_is_rate_limited(api_client: TestClient) -> None:
    statuses = [
        api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=AUTH).status_code
        for _ in range(6)
    ]

    assert statuses[:5] == [200] * 5
    assert statuses[5] == 429


def test_execute_rejects_foreign_origin(api_client: TestClient) -> None:
    headers = dict(AUTH, Origin="https://evil.example")

    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=headers)

    assert response.status_code == 403


def test_ai_stats(api_client: TestClient, pipeline: FakePipeline) -> None:
    pipeline.completion.monitor.record("market_analysis", "gpt-5-mini", 150, {"total_tokens": 100})

    response = api_client.get("/api/expansion/ai/stats", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["performance"]["total_calls"] == 1
    assert body["concurrency"]["active"] == 0
    assert "cache" in body["completion"]


def test_runs_lists_history(api_client: TestClient, monkeypatch) -> None:
    captured = {}

    def fake_list(token: str):
        captured["token"] = token
        return [{"id": "run-1", "region": "Paris", "candidate_count": 3, "created_at": "2026-01-01T00:00:00Z"}]

    monkeypatch.setattr(expansion_routes, "list_expansion_runs", fake_list)

    response = api_client.get("/api/expansion/runs", headers=AUTH)

    assert response.status_code == 200
    assert response.json()[0]["candidate_count"] == 3
    assert captured["token"] == "test-token"


def test_runs_maps_postgrest_errors(api_client: TestClient, monkeypatch) -> None:
    def fake_list(_token: str):
        raise PostgrestAPIError({"message": "permission denied", "code": "403", "hint": None, "details": None})

    monkeypatch.setattr(expansion_routes, "list_expansion_runs", fake_list)

    response = api_client.get("/api/expansion/runs", headers=AUTH)

    assert response.status_code == 403
    assert response.json()["detail"] == "Accès refusé aux analyses demandées."


def test_execute_hides_unexpected_errors(api_client: TestClient, pipeline: FakePipeline) -> None:
    pipeline.error = KeyError("boom")

    response = api_client.post("/api/expansion/pipeline/execute", json=PAYLOAD, headers=AUTH)

    assert response.status_code == 500
    assert response.json()["detail"] == "Erreur inattendue lors de l'analyse d'expansion."
