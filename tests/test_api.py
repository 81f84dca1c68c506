from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import bash
from engram.api.routes import create_app
from engram.config import APIConfig


def _client(eg) -> TestClient:
    return TestClient(create_app(engram=eg, background=False))


def test_capture_find_and_listings(engram_factory, base_time):
    eg = engram_factory()
    client = _client(eg)

    assert client.get("/api/v1/health").json() == {"status": "ok", "service": "engram"}

    payload = bash("s1", "git commit -m wip", base_time)
    resp = client.post("/api/v1/capture", json=payload)
    assert resp.status_code == 201
    body = resp.json()
    assert body["session_id"] == "s1"
    assert body["keys"] == {"command": "git", "subcommand": "commit"}

    dup = client.post("/api/v1/capture", json=payload)
    assert dup.status_code == 409
    assert dup.json()["detail"]["existing_id"] == body["id"]

    assert client.post("/api/v1/capture", json={"tool_name": "Bash"}).status_code == 422

    found = client.get("/api/v1/find", params={"q": "git"}).json()
    assert found["count"] >= 1
    assert found["results"][0]["kind"] == "memory"
    assert found["results"][0]["id"] == body["id"]

    status = client.get("/api/v1/status").json()
    assert status["memories"] == 1
    assert status["vectors"] == 1

    assert client.get("/api/v1/patterns").json() == {"patterns": [], "count": 0}
    assert client.get("/api/v1/patterns", params={"state": "bogus"}).status_code == 422
    assert client.get("/api/v1/patterns/42").status_code == 404
    assert client.post("/api/v1/patterns/42/publish").status_code == 404
    assert client.get("/api/v1/rules").json() == {"rules": [], "count": 0}


def test_sessions_and_consolidate(engram_factory):
    client = _client(engram_factory())
    assert client.post("/api/v1/sessions/s9/end").status_code == 404
    assert client.post("/api/v1/sessions/s9/start").json() == {"session_id": "s9", "status": "started"}
    assert client.post("/api/v1/sessions/s9/end").json() == {"session_id": "s9", "status": "ended"}

    resp = client.post("/api/v1/consolidate").json()
    assert resp["status"] == "done"
    assert resp["report"]["seeded"] == []


def test_bearer_token_required(engram_factory):
    client = _client(engram_factory(api=APIConfig(bearer_token="secret")))
    assert client.get("/api/v1/health").status_code == 200
    assert client.get("/api/v1/status").status_code == 401
    assert client.get("/api/v1/status", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/v1/status", headers={"Authorization": "Bearer secret"}).status_code == 200
