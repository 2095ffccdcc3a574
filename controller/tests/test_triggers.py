"""Tests for trigger evaluation."""

from datetime import datetime, timezone

from controller.src.models.definition import EventKind
from controller.src.models.run import RepositoryEvent
from controller.src.services.pipeline_parser import parse_pipeline_dict
from controller.src.services.triggers import evaluate, match_glob, resolve_inputs

STEPS = [{"run": "true"}]

def definition(on, **jobs):
    jobs = jobs or {"build": {"steps": STEPS}}
    return parse_pipeline_dict({"on": on, "jobs": jobs})

def push(branch="main", paths=None):
    return RepositoryEvent(kind=EventKind.PUSH, branch=branch, changed_paths=paths)

def test_glob_matching():
    assert match_glob("main", "main")
    assert match_glob("release/1.0", "release/*")
    assert not match_glob("release/1.0/hotfix", "release/*")
    assert match_glob("release/1.0/hotfix", "release/**")
    assert match_glob("README.md", "**/*.md")
    assert match_glob("docs/guide/intro.md", "**/*.md")
    assert match_glob("v1", "v?")
    assert not match_glob("v10", "v?")
    assert not match_glob("mainline", "main")

def test_push_without_filters():
    assert evaluate(definition("push"), push("anything")) == {"build"}

def test_event_kind_must_match():
    assert evaluate(definition("push"), RepositoryEvent(kind=EventKind.RELEASE)) == set()

def test_branch_filters():
    d = definition({"push": {"branches": ["main", "release/**"], "branches-ignore": ["release/old/**"]}})
    assert evaluate(d, push("main")) == {"build"}
    assert evaluate(d, push("release/2.0")) == {"build"}
    assert evaluate(d, push("release/old/1.0")) == set()
    assert evaluate(d, push("feature/x")) == set()

def test_path_filters():
    d = definition({"push": {"paths": ["src/**"]}})
    assert evaluate(d, push(paths=["src/app.py"])) == {"build"}
    assert evaluate(d, push(paths=["README.md"])) == set()

def test_paths_ignore_removes_before_paths():
    d = definition({"push": {"paths": ["src/**"], "paths-ignore": ["src/docs/**"]}})
    assert evaluate(d, push(paths=["src/docs/a.md"])) == set()
    assert evaluate(d, push(paths=["src/docs/a.md", "src/main.py"])) == {"build"}

def test_paths_ignore_only():
    d = definition({"push": {"paths-ignore": ["docs/**"]}})
    assert evaluate(d, push(paths=["docs/index.md"])) == set()
    assert evaluate(d, push(paths=["docs/index.md", "setup.py"])) == {"build"}

def test_path_filters_skipped_without_changed_paths():
    d = definition({"pull_request": {"paths": ["src/**"]}})
    event = RepositoryEvent(kind=EventKind.PULL_REQUEST, branch="main")
    assert evaluate(d, event) == {"build"}

def test_schedule_uses_cron_tick():
    d = definition({"schedule": [{"cron": "0 3 * * *"}]})
    at_three = RepositoryEvent(kind=EventKind.SCHEDULE, cron_tick=datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc))
    at_four = RepositoryEvent(kind=EventKind.SCHEDULE, cron_tick=datetime(2024, 1, 1, 4, 0, tzinfo=timezone.utc))
    assert evaluate(d, at_three) == {"build"}
    assert evaluate(d, at_four) == set()

def test_schedule_falls_back_to_now():
    d = definition({"schedule": [{"cron": "0 3 * * *"}]})
    event = RepositoryEvent(kind=EventKind.SCHEDULE)
    assert evaluate(d, event, now=datetime(2024, 1, 1, 3, 0)) == {"build"}
    assert evaluate(d, event, now=datetime(2024, 1, 1, 3, 1)) == set()

def test_manual_required_inputs():
    d = definition({"workflow_dispatch": {"inputs": {
        "target": {"required": True},
        "region": {"required": True, "default": "eu"},
    }}})
    without = RepositoryEvent(kind=EventKind.MANUAL, branch="main")
    with_target = RepositoryEvent(kind=EventKind.MANUAL, branch="main", dispatch_inputs={"target": "prod"})
    assert evaluate(d, without) == set()
    assert evaluate(d, with_target) == {"build"}
    assert resolve_inputs(d, with_target) == {"target": "prod", "region": "eu"}

def test_dispatch_inputs_override_defaults():
    d = definition({"manual": {"inputs": {"region": {"default": "eu"}}}})
    event = RepositoryEvent(kind=EventKind.MANUAL, dispatch_inputs={"region": "us"})
    assert resolve_inputs(d, event) == {"region": "us"}

def test_job_event_scoping():
    d = definition(
        ["push", "release"],
        build={"steps": STEPS},
        publish={"events": ["release"], "steps": STEPS},
    )
    assert evaluate(d, push()) == {"build"}
    assert evaluate(d, RepositoryEvent(kind=EventKind.RELEASE, branch="main")) == {"build", "publish"}

def test_any_matching_rule_activates():
    d = definition({"push": {"branches": ["main"]}, "pull_request": {"branches": ["dev"]}})
    assert evaluate(d, push("main")) == {"build"}
    assert evaluate(d, RepositoryEvent(kind=EventKind.PULL_REQUEST, branch="main")) == set()
