"""Tests for the FastAPI application helpers."""

from __future__ import annotations

from fastapi.testclient import TestClient

from puzzleforge.api.app import AppDependencies, create_app
from puzzleforge.config import Settings
from puzzleforge.gateway import GenerationGateway, MockGenerationBackend, RateLimitError, Tier, default_mock_responses
from puzzleforge.models import Mode, PuzzleType, SessionResult, SessionState
from puzzleforge.prompts import quadrant_marker
from puzzleforge.retrieval import SelectionBudget
from puzzleforge.services import build_pipeline

FRAGMENT = {"id": "frag-1", "content": "Slow pour rhythm at the counter", "title": "Pour", "updated_at": 1.0}


class RateLimitedOrchestrator:
    async def start_session(self, fragments, intent, puzzle_type, **kwargs):
        raise RateLimitError("backend busy", retry_after=7)


class RecordingOrchestrator:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def start_session(self, fragments, intent, puzzle_type, *, focal_question=None, budget=None):
        self.calls.append({"fragments": list(fragments), "budget": budget, "focal_question": focal_question})
        state = SessionState(session_id="stub", intent=intent, puzzle_type=puzzle_type, focal_question="Why tea?")
        return SessionResult(state=state)


def make_dependencies(settings: Settings, orchestrator=None, gateway=None) -> AppDependencies:
    pipeline = build_pipeline(settings, gateway=gateway)
    return AppDependencies(
        gateway=pipeline.gateway,
        feature_cache=pipeline.feature_cache,
        preferences=pipeline.preferences,
        orchestrator=orchestrator or pipeline.orchestrator,
        background=pipeline.background,
    )


def create_test_client(orchestrator=None, **overrides) -> tuple[TestClient, AppDependencies]:
    settings = Settings(environment="test", **overrides)
    deps = make_dependencies(settings, orchestrator)
    return TestClient(create_app(settings=settings, dependencies=deps)), deps


def test_generation_errors_map_to_503_with_retry_after() -> None:
    client, _ = create_test_client(RateLimitedOrchestrator())

    response = client.post("/sessions", json={"intent": "tea", "fragments": [FRAGMENT]}, headers={"X-Request-ID": "req-1"})

    assert response.status_code == 503
    body = response.json()
    assert body["error_type"] == "RateLimitError"
    assert body["retryable"] is True
    assert body["correlation_id"] == "req-1"
    assert response.headers["Retry-After"] == "7"


def test_budget_override_is_applied_over_settings() -> None:
    orchestrator = RecordingOrchestrator()
    client, _ = create_test_client(orchestrator, ranker_per_quadrant=4)

    response = client.post(
        "/sessions",
        json={"intent": "tea", "fragments": [FRAGMENT], "budget": {"max_per_tag": 1}, "focal_question": "Why tea?"},
    )

    assert response.status_code == 201, response.text
    assert response.json()["status"] == "partial"
    budget = orchestrator.calls[0]["budget"]
    assert isinstance(budget, SelectionBudget)
    assert budget.max_per_tag == 1
    assert budget.per_quadrant == 4
    assert orchestrator.calls[0]["fragments"][0].updated_at == 1.0


def test_api_key_is_required_when_configured() -> None:
    client, _ = create_test_client(api_key="secret")

    assert client.get("/sessions/abc").status_code == 401
    assert client.get("/sessions/abc", headers={"X-API-Key": "secret"}).status_code == 404
    assert client.get("/healthz").status_code == 200


def test_rate_limiter_rejects_bursts() -> None:
    client, _ = create_test_client(RecordingOrchestrator(), rate_limit_requests=2)
    payload = {"intent": "tea", "fragments": []}

    statuses = [client.post("/sessions", json=payload).status_code for _ in range(3)]

    assert statuses == [201, 201, 429]


def test_unknown_session_and_piece_return_404() -> None:
    client, _ = create_test_client()
    session = client.post("/sessions", json={"intent": "tea", "fragments": [FRAGMENT]}).json()

    missing_piece = client.post(
        f"/sessions/{session['session_id']}/outcomes", json={"piece_id": "nope", "outcome": "placed"}
    )
    missing_session = client.post("/sessions/nope/quadrants/FORM/replenish", json={})

    assert missing_piece.status_code == 404
    assert missing_piece.json()["detail"] == "Unknown piece"
    assert missing_session.status_code == 404
    assert client.delete("/sessions/nope").status_code == 404
    assert client.get("/sessions/nope/preferences").status_code == 404


def test_invalid_payloads_are_rejected() -> None:
    client, _ = create_test_client()

    assert client.post("/sessions", json={"intent": ""}).status_code == 422
    assert client.post("/sessions", json={"intent": "tea", "puzzle_type": "GUESS"}).status_code == 422
    assert client.post("/sessions/x/quadrants/COLOR/replenish", json={}).status_code == 422


def test_readiness_reports_degraded_fast_tier() -> None:
    client, deps = create_test_client()
    deps.gateway.mark_exhausted(Tier.FAST)

    response = client.get("/healthz/ready")

    assert response.json()["status"] == "degraded"


def test_session_response_carries_quadrant_errors() -> None:
    settings = Settings(environment="test", quadrant_timeout_seconds=5.0)
    responses = default_mock_responses()
    responses[quadrant_marker(Mode.MOTION)] = "not json"
    deps = make_dependencies(settings, gateway=GenerationGateway(MockGenerationBackend(responses)))
    client = TestClient(create_app(settings=settings, dependencies=deps))

    response = client.post("/sessions", json={"intent": "tea", "puzzle_type": PuzzleType.EXPAND.value, "fragments": [FRAGMENT]})

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["status"] == "completed"
    assert body["pieces"]["MOTION"] == []
    assert body["errors"][0]["mode"] == "MOTION"
    assert body["errors"][0]["retry"]["puzzle_type"] == "EXPAND"
