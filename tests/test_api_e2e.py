from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from puzzleforge.api.app import create_app
from puzzleforge.config import Settings

FIXTURE = Path(__file__).resolve().parents[1] / "evaluations" / "fixtures" / "sample.json"


def make_app() -> TestClient:
    settings = Settings(
        environment="test",
        use_remote_backend=False,
        rate_limit_requests=1000,
        api_key=None,
    )
    app = create_app(settings=settings)
    return TestClient(app)


def sample_payload() -> dict:
    data = json.loads(FIXTURE.read_text(encoding="utf-8"))
    return {
        "intent": data["intent"],
        "puzzle_type": data["puzzle_type"],
        "fragments": data["fragments"],
    }


def test_health_and_session_flow():
    client = make_app()
    # Health endpoints
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["environment"] == "test"
    r = client.head("/healthz")
    assert r.status_code == 200
    r = client.get("/livez")
    assert r.status_code == 200
    r = client.get("/healthz/ready")
    assert r.json() == {"status": "ready"}

    # Start a session against the mock backend
    r = client.post("/sessions", json=sample_payload())
    assert r.status_code == 201, r.text
    session = r.json()
    session_id = session["session_id"]
    assert session["status"] == "completed"
    assert set(session["pieces"]) == {"FORM", "MOTION", "EXPRESSION", "FUNCTION"}
    assert all(len(pool) == 5 for pool in session["pieces"].values())
    assert session["focal_question"].endswith("?")
    assert r.headers["X-Correlation-ID"]

    r = client.get(f"/sessions/{session_id}")
    assert r.status_code == 200
    assert r.json()["focal_question"] == session["focal_question"]

    # Feedback loop
    piece_id = session["pieces"]["EXPRESSION"][0]["id"]
    r = client.post(f"/sessions/{session_id}/outcomes", json={"piece_id": piece_id, "outcome": "placed"})
    assert r.status_code == 200, r.text
    r = client.get(f"/sessions/{session_id}/preferences")
    assert r.status_code == 200
    assert r.json()["summary"]["overall"]["placed"] == 1

    # Replenishing with the canned backend finds nothing new
    r = client.post(f"/sessions/{session_id}/quadrants/FORM/replenish", json={"count": 3})
    assert r.status_code == 200, r.text
    assert r.json()["pieces"] == []
    assert r.json()["stats"]["fell_back"] is True

    r = client.delete(f"/sessions/{session_id}")
    assert r.status_code == 204
    r = client.get(f"/sessions/{session_id}")
    assert r.status_code == 404


def test_gateway_status_and_metrics():
    client = make_app()
    client.post("/sessions", json=sample_payload())

    r = client.get("/gateway/status")
    assert r.status_code == 200
    body = r.json()
    assert body["mock"] is True
    assert body["tiers"]["pro"]["hard_limit"] == 100
    assert body["feature_cache"]["total"] == 6

    r = client.get("/metrics")
    assert r.status_code == 200
    assert "puzzleforge_generation_requests_total" in r.text


def test_background_collectors_serve_insights():
    payload = sample_payload()
    with make_app() as client:
        r = client.get("/insights")
        assert r.status_code == 200
        assert r.json()["available"] is False

        r = client.post("/fragments/changes", json={"fragments": payload["fragments"]})
        assert r.status_code == 202, r.text
        assert r.json()["fragment_count"] == 6
        assert len(r.json()["pending"]) == 6
