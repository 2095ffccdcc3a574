"""Tests for turning repository events into queued runs."""

import asyncio
import uuid

import pytest

from api.src.models.pipeline import JobRun, PipelineRun, Repository
from api.src.services import dispatch
from api.src.services.github import RepositoryError
from controller.src.models.definition import EventKind
from controller.src.models.run import RepositoryEvent

DEFINITION = """
name: CI
on:
  push:
    branches: [main]
  release:
jobs:
  build:
    steps:
      - run: make
  test:
    needs: build
    steps:
      - run: make test
  publish:
    events: [release]
    needs: test
    environment: production
    steps:
      - run: make publish
"""

PUSH = RepositoryEvent(
    kind=EventKind.PUSH,
    branch="main",
    actor="octocat",
    commit_sha="abc123",
    repository="acme/app",
    clone_url="https://github.com/acme/app.git",
)

class FakeResult:
    def __init__(self, value=None):
        self.value = value

    def scalar_one_or_none(self):
        return self.value

class FakeSession:
    def __init__(self, existing=None):
        self.existing = existing
        self.added = []
        self.commits = 0

    def add(self, obj):
        self.added.append(obj)

    async def flush(self):
        for obj in self.added:
            if obj.id is None:
                obj.id = uuid.uuid4()

    async def commit(self):
        self.commits += 1

    async def execute(self, statement):
        return FakeResult(self.existing)

@pytest.fixture
def queued(monkeypatch):
    messages = []

    async def enqueue(run_id, definition, event, jobs=None):
        messages.append({"run_id": run_id, "definition": definition, "event": event, "jobs": jobs})

    monkeypatch.setattr(dispatch, "enqueue_pipeline_run", enqueue)
    return messages

def serve_definition(monkeypatch, source):
    async def load(event):
        if isinstance(source, Exception):
            raise source
        return source

    monkeypatch.setattr(dispatch, "load_definition", load)

def test_repository_names():
    assert dispatch.repository_names("https://github.com/acme/app.git") == ("app", "acme/app")
    assert dispatch.repository_names("git@github.com:acme/app.git") == ("app", "acme/app")
    assert dispatch.repository_names("https://github.com/acme/app/") == ("app", "acme/app")

def test_push_creates_and_queues_run(monkeypatch, queued):
    serve_definition(monkeypatch, DEFINITION)
    db = FakeSession()

    result = asyncio.run(dispatch.process_event(PUSH, db))

    assert result["status"] == "queued"
    assert result["jobs"] == ["build", "test"]
    assert result["warnings"] == []

    repository = next(obj for obj in db.added if isinstance(obj, Repository))
    assert repository.full_name == "acme/app"
    assert repository.name == "app"

    run = next(obj for obj in db.added if isinstance(obj, PipelineRun))
    assert run.repository_id == repository.id
    assert run.pipeline == "CI"
    assert run.event == "push"
    assert run.status == "queued"
    assert run.triggered_by == "octocat"
    assert run.config["source"] == DEFINITION
    assert result["run_id"] == str(run.id)

    jobs = {obj.name: obj for obj in db.added if isinstance(obj, JobRun)}
    assert {name: job.status for name, job in jobs.items()} == {
        "build": "pending",
        "test": "pending",
        "publish": "skipped",
    }
    assert jobs["publish"].environment == "production"
    assert db.commits == 1

    message = queued[0]
    assert message["run_id"] == str(run.id)
    # The YAML text travels as-is so the controller re-parses the same source
    assert message["definition"] == DEFINITION
    assert message["event"]["kind"] == "push"
    assert message["event"]["commit_sha"] == "abc123"
    assert message["jobs"] == ["build", "test"]

def test_existing_repository_is_reused(monkeypatch, queued):
    serve_definition(monkeypatch, DEFINITION)
    existing = Repository(id=uuid.uuid4(), name="app", full_name="acme/app", clone_url=PUSH.clone_url)
    db = FakeSession(existing=existing)

    asyncio.run(dispatch.process_event(PUSH, db))

    assert not any(isinstance(obj, Repository) for obj in db.added)
    run = next(obj for obj in db.added if isinstance(obj, PipelineRun))
    assert run.repository_id == existing.id

def test_untriggered_event_is_skipped(monkeypatch, queued):
    serve_definition(monkeypatch, DEFINITION)
    event = PUSH.model_copy(update={"branch": "feature"})

    result = asyncio.run(dispatch.process_event(event, FakeSession()))

    assert result["status"] == "skipped"
    assert queued == []

def test_missing_definition_is_skipped(monkeypatch, queued):
    serve_definition(monkeypatch, None)
    result = asyncio.run(dispatch.process_event(PUSH, FakeSession()))
    assert result == {"status": "skipped", "reason": "No pipeline configuration found"}

def test_event_without_repository_is_skipped(queued):
    event = RepositoryEvent(kind=EventKind.MANUAL, branch="main")
    result = asyncio.run(dispatch.process_event(event, FakeSession()))
    assert result["status"] == "skipped"

def test_invalid_definition_reports_error(monkeypatch, queued):
    serve_definition(monkeypatch, "on: push\njobs:\n  a:\n    needs: a\n    steps: [{run: x}]\n")
    result = asyncio.run(dispatch.process_event(PUSH, FakeSession()))

    assert result["status"] == "error"
    assert "Dependency cycle detected" in result["reason"]
    assert queued == []

def test_clone_failure_reports_error(monkeypatch, queued):
    serve_definition(monkeypatch, RepositoryError("Repository clone timed out"))
    result = asyncio.run(dispatch.process_event(PUSH, FakeSession()))
    assert result == {"status": "error", "reason": "Repository clone timed out"}

def test_schedule_event_is_pinned_to_its_tick(monkeypatch, queued):
    serve_definition(monkeypatch, """
on:
  schedule:
    - cron: "* * * * *"
jobs:
  nightly:
    steps:
      - run: make nightly
""")
    event = RepositoryEvent(
        kind=EventKind.SCHEDULE,
        branch="main",
        repository="acme/app",
        clone_url="https://github.com/acme/app.git",
    )

    result = asyncio.run(dispatch.process_event(event, FakeSession()))

    assert result["status"] == "queued"
    message = queued[0]
    assert message["event"]["cron_tick"] is not None
    assert message["jobs"] == ["nightly"]
