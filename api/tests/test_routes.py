"""Tests for the HTTP routes, with the database and queue stubbed out."""

import json

import pytest
from fastapi.testclient import TestClient

from api.src.db.database import get_db
from api.src.main import app
from api.src.routes import pipelines as pipeline_routes
from api.src.routes import webhooks as webhook_routes
from controller.src.models.definition import EventKind

PUSH_PAYLOAD = {
    "ref": "refs/heads/main",
    "after": "abc123",
    "repository": {
        "name": "app",
        "full_name": "acme/app",
        "clone_url": "https://github.com/acme/app.git",
    },
    "pusher": {"name": "octocat"},
    "commits": [],
}

@pytest.fixture
def client():
    async def no_db():
        yield None

    app.dependency_overrides[get_db] = no_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

@pytest.fixture
def processed(monkeypatch):
    events = []

    async def fake_process_event(event, db):
        events.append(event)
        return {"status": "queued", "run_id": "run-1", "jobs": ["build"], "warnings": []}

    monkeypatch.setattr(webhook_routes, "process_event", fake_process_event)
    monkeypatch.setattr(pipeline_routes, "process_event", fake_process_event)
    return events

def post_webhook(client, event_name, payload):
    return client.post(
        "/api/webhooks/github",
        content=json.dumps(payload),
        headers={"X-GitHub-Event": event_name, "Content-Type": "application/json"},
    )

def test_root(client):
    assert client.get("/").json()["name"] == "Conveyor"

def test_webhook_ping(client):
    response = post_webhook(client, "ping", {"zen": "Keep it logically awesome."})
    assert response.status_code == 200
    assert response.json()["status"] == "pong"

def test_webhook_push(client, processed):
    response = post_webhook(client, "push", PUSH_PAYLOAD)

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    event = processed[0]
    assert event.kind == EventKind.PUSH
    assert event.branch == "main"
    assert event.commit_sha == "abc123"

def test_webhook_ignored_event(client, processed):
    response = post_webhook(client, "issues", {"action": "opened"})
    assert response.json()["status"] == "ignored"
    assert processed == []

def test_webhook_bad_signature(client, monkeypatch):
    monkeypatch.setattr(webhook_routes, "verify_signature", lambda body, signature: False)
    response = post_webhook(client, "push", PUSH_PAYLOAD)
    assert response.status_code == 401

def test_webhook_invalid_json(client):
    response = client.post(
        "/api/webhooks/github",
        content=b"{not json",
        headers={"X-GitHub-Event": "push", "Content-Type": "application/json"},
    )
    assert response.status_code == 400

def test_manual_event(client, processed):
    response = client.post("/api/pipelines/events", json={
        "repository_url": "https://github.com/acme/app.git",
        "kind": "manual",
        "branch": "release",
        "actor": "octocat",
        "inputs": {"target": "prod"},
    })

    assert response.status_code == 200
    event = processed[0]
    assert event.kind == EventKind.MANUAL
    assert event.repository == "acme/app"
    assert event.dispatch_inputs == {"target": "prod"}
    assert event.branch == "release"

def test_only_manual_and_schedule_events_accepted(client, processed):
    response = client.post("/api/pipelines/events", json={
        "repository_url": "https://github.com/acme/app.git",
        "kind": "push",
    })
    assert response.status_code == 400
    assert processed == []
