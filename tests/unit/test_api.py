"""REST binding: actor resolution and error rendering."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from folio.api import app
from folio.auth import reload_api_key_cache
from folio.config import settings
from tests.helpers import ABSTRACT

KEYS = {
    "author": "author-key-12345678",
    "editor": "editor-key-12345678",
    "reviewer": "reviewer-key-12345678",
}


@pytest.fixture()
def _auth_env(tmp_path):
    original_data_dir = settings.data_dir
    original_require = settings.security.require_api_key
    original_keys = settings.security.api_keys_json

    settings.data_dir = tmp_path
    settings.security.require_api_key = True
    settings.security.api_keys_json = json.dumps(
        [
            {"key": KEYS["author"], "actor_id": "author-1", "role": "author"},
            {"key": KEYS["editor"], "actor_id": "editor-1", "role": "section_editor"},
            {"key": KEYS["reviewer"], "actor_id": "rev-1", "role": "reviewer"},
            {"key": "short", "actor_id": "ignored", "role": "eic"},
        ]
    )
    reload_api_key_cache()

    try:
        yield KEYS
    finally:
        settings.data_dir = original_data_dir
        settings.security.require_api_key = original_require
        settings.security.api_keys_json = original_keys
        reload_api_key_cache()


def _as(role: str) -> dict[str, str]:
    return {"X-API-Key": KEYS[role]}


def _submit(client: TestClient) -> dict:
    r = client.post(
        "/api/manuscripts",
        json={"title": "Queueing models", "abstract": ABSTRACT, "keywords": ["queueing"]},
        headers=_as("author"),
    )
    assert r.status_code == 201, r.text
    return r.json()


def test_missing_and_unknown_keys_are_rejected(_auth_env):
    client = TestClient(app)

    r = client.get("/api/manuscripts")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"
    assert r.json()["reason"] == "missing_api_key"

    r = client.get("/api/manuscripts", headers={"X-API-Key": "nope-nope-nope"})
    assert r.status_code == 401
    assert r.json()["reason"] == "invalid_api_key"

    r = client.get("/api/manuscripts", headers={"X-API-Key": "short"})
    assert r.status_code == 401

    # headers alone do not identify a caller once keys are required
    r = client.get("/api/manuscripts", headers={"X-Actor-Id": "eic-1", "X-Actor-Role": "eic"})
    assert r.status_code == 401


def test_submit_and_transition_through_api(_auth_env):
    client = TestClient(app)
    manuscript = _submit(client)
    assert manuscript["status"] == "new"
    assert manuscript["author_id"] == "author-1"
    mid = manuscript["manuscript_id"]

    r = client.post(f"/api/manuscripts/{mid}/transitions", json={"target_status": "under_review"},
                    headers=_as("author"))
    assert r.status_code == 403
    body = r.json()
    assert body["error"] == "forbidden"
    assert body["code"] == "role_not_permitted"
    assert body["role"] == "author"

    r = client.post(f"/api/manuscripts/{mid}/transitions", json={"target_status": "accepted"},
                    headers=_as("editor"))
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"

    r = client.post(f"/api/manuscripts/{mid}/transitions",
                    json={"target_status": "under_review", "expected_version": 1}, headers=_as("editor"))
    assert r.status_code == 200
    assert r.json()["status"] == "under_review"
    assert r.json()["version"] == 2

    r = client.post(f"/api/manuscripts/{mid}/transitions",
                    json={"target_status": "rejected", "expected_version": 1}, headers=_as("editor"))
    assert r.status_code == 409
    assert r.json()["error"] == "conflict"

    r = client.get(f"/api/manuscripts/{mid}/history", headers=_as("reviewer"))
    assert [h["to_status"] for h in r.json()] == ["new", "under_review"]

    r = client.get("/api/audit", params={"target_id": mid}, headers=_as("editor"))
    assert r.status_code == 403


def test_review_round_trip_through_api(_auth_env):
    client = TestClient(app)
    mid = _submit(client)["manuscript_id"]
    due = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()

    r = client.post(f"/api/manuscripts/{mid}/reviews", json={"reviewer_id": "rev-1", "due_date": due},
                    headers=_as("editor"))
    assert r.status_code == 201, r.text
    review_id = r.json()["review_id"]

    r = client.get("/api/reviews/queue", headers=_as("reviewer"))
    assert [a["review_id"] for a in r.json()] == [review_id]

    r = client.post(
        f"/api/reviews/{review_id}/submit",
        json={
            "recommendation": "minor",
            "score": 7,
            "form_fields": {"strengths": "s", "weaknesses": "w", "comments": "c"},
        },
        headers=_as("reviewer"),
    )
    assert r.status_code == 200, r.text
    assert r.json()["recommendation"] == "minor"

    r = client.post(f"/api/reviews/{review_id}/submit",
                    json={"recommendation": "minor", "score": 7, "form_fields": {}}, headers=_as("reviewer"))
    assert r.status_code in (409, 422)

    r = client.get(f"/api/manuscripts/{mid}/recommendation", headers=_as("editor"))
    assert r.status_code == 200
    assert r.json()["manual_decision_required"] is True


def test_malformed_body_and_missing_resource(_auth_env):
    client = TestClient(app)

    r = client.post("/api/manuscripts", json={"title": "x", "keywords": "not-a-list"}, headers=_as("author"))
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == "invalid_payload"
    assert any(f["field"].endswith("keywords") for f in body["fields"])

    r = client.post("/api/manuscripts", json={"title": "x", "abstract": "short", "keywords": ["a"]},
                    headers=_as("author"))
    assert r.status_code == 422
    assert r.json()["code"] == "screening_failed"

    r = client.get("/api/manuscripts/does-not-exist", headers=_as("editor"))
    assert r.status_code == 404
    assert r.json()["manuscript_id"] == "does-not-exist"


def test_gateway_headers_when_keys_not_required(_auth_env):
    settings.security.require_api_key = False
    client = TestClient(app)

    r = client.get("/api/manuscripts", headers={"X-Actor-Id": "eic-1", "X-Actor-Role": "eic"})
    assert r.status_code == 200
    assert r.json() == []

    r = client.get("/api/manuscripts", headers={"X-Actor-Id": "eic-1"})
    assert r.status_code == 401

    r = client.get("/api/manuscripts", headers={"X-Actor-Id": "eic-1", "X-Actor-Role": "emperor"})
    assert r.status_code == 422
    assert r.json()["code"] == "invalid_role"


def test_probes_and_request_id(_auth_env):
    client = TestClient(app)
    r = client.get("/healthz", headers={"X-Request-Id": "abc123"})
    assert r.json() == {"status": "ok"}
    assert r.headers["X-Request-Id"] == "abc123"
    assert client.get("/readyz").json() == {"status": "ready"}
