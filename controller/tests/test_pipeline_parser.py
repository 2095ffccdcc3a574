"""Tests for pipeline parser."""

import pytest

from controller.src.errors import CycleError, DuplicateJobError, ParseError, UnknownJobError
from controller.src.models.definition import EventKind, StepKind
from controller.src.services.pipeline_parser import parse_pipeline_config, parse_pipeline_dict

VALID = """
name: CI
on:
  push:
    branches: [main, 'release/**']
    paths-ignore: ['docs/**']
  pull_request:
  workflow_dispatch:
    inputs:
      target:
        default: staging
jobs:
  build:
    steps:
      - uses: actions/checkout@v4
      - name: Compile
        run: make build
        outputs:
          binary: dist/app
  test:
    needs: build
    steps:
      - run: make test
  deploy:
    needs: [build, test]
    if: branch == 'main'
    environment: production
    concurrency:
      group: deploy
      cancel-in-progress: true
    steps:
      - run: ./deploy.sh
        env:
          TOKEN: ${{ secrets.DEPLOY_TOKEN }}
          REGION: eu-west-1
"""

def test_valid_pipeline():
    definition = parse_pipeline_config(VALID)

    assert definition.name == "CI"
    assert list(definition.jobs) == ["build", "test", "deploy"]
    assert definition.warnings == []

    assert [rule.event for rule in definition.triggers] == [
        EventKind.PUSH, EventKind.PULL_REQUEST, EventKind.MANUAL,
    ]
    assert definition.triggers[0].branches == ["main", "release/**"]
    assert definition.triggers[0].paths_ignore == ["docs/**"]
    assert definition.triggers[2].inputs["target"].default == "staging"

def test_jobs_and_steps():
    jobs = parse_pipeline_config(VALID).jobs

    checkout, compile_step = jobs["build"].steps
    assert checkout.kind == StepKind.USES
    assert checkout.uses == "checkout"
    assert checkout.name == "actions/checkout@v4"
    assert compile_step.name == "Compile"
    assert compile_step.outputs[0].name == "binary"
    assert compile_step.outputs[0].path == "dist/app"

    assert jobs["test"].needs == ["build"]
    assert jobs["test"].steps[0].name == "make test"

    deploy = jobs["deploy"]
    assert deploy.needs == ["build", "test"]
    assert deploy.environment == "production"
    assert deploy.concurrency.group == "deploy"
    assert deploy.concurrency.cancel_in_progress is True
    assert deploy.condition.source == "branch == 'main'"

    token, region = deploy.steps[0].env
    assert token.name == "TOKEN" and token.secret == "DEPLOY_TOKEN" and token.value is None
    assert region.value == "eu-west-1"

def test_needs_edges():
    edges = parse_pipeline_config(VALID).needs_edges()
    assert edges == {"build": [], "test": ["build"], "deploy": ["build", "test"]}

def test_missing_jobs():
    with pytest.raises(ParseError, match="must have 'jobs'"):
        parse_pipeline_config("name: Bad Pipeline\non: push\n")

def test_empty_config():
    with pytest.raises(ParseError, match="Empty"):
        parse_pipeline_config("")

def test_invalid_yaml():
    with pytest.raises(ParseError, match="Invalid YAML"):
        parse_pipeline_config("jobs: [unclosed")

def test_duplicate_job_names():
    config = """
on: push
jobs:
  build:
    steps: [{run: make}]
  build:
    steps: [{run: make again}]
"""
    with pytest.raises(DuplicateJobError, match="build"):
        parse_pipeline_config(config)

def test_duplicate_key_outside_jobs():
    config = """
on: push
jobs:
  build:
    steps: [{run: make, run: make twice}]
"""
    with pytest.raises(ParseError, match="Duplicate key 'run'"):
        parse_pipeline_config(config)

def test_unknown_need():
    config = {"on": "push", "jobs": {"build": {"needs": "deploy", "steps": [{"run": "make"}]}}}
    with pytest.raises(UnknownJobError, match="unknown job 'deploy'"):
        parse_pipeline_dict(config)

def test_self_need_is_a_cycle():
    config = {"on": "push", "jobs": {"a": {"needs": "a", "steps": [{"run": "true"}]}}}
    with pytest.raises(CycleError) as exc:
        parse_pipeline_dict(config)
    assert exc.value.cycle == ["a", "a"]

def test_cycle_rejected():
    config = {
        "on": "push",
        "jobs": {
            "a": {"needs": "c", "steps": [{"run": "true"}]},
            "b": {"needs": "a", "steps": [{"run": "true"}]},
            "c": {"needs": "b", "steps": [{"run": "true"}]},
        },
    }
    with pytest.raises(CycleError) as exc:
        parse_pipeline_dict(config)
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "Dependency cycle detected" in str(exc.value)

def test_unsupported_condition_operator():
    config = {"on": "push", "jobs": {"a": {"if": "branch > 'main'", "steps": [{"run": "true"}]}}}
    with pytest.raises(ParseError, match="Unsupported operator"):
        parse_pipeline_dict(config)

def test_condition_must_need_referenced_job():
    config = {
        "on": "push",
        "jobs": {
            "a": {"steps": [{"run": "true"}]},
            "b": {"if": "needs.a.result == 'failed'", "steps": [{"run": "true"}]},
        },
    }
    with pytest.raises(ParseError, match="does not need it"):
        parse_pipeline_dict(config)

def test_unknown_keys_warn():
    config = {
        "on": "push",
        "jobs": {"build": {"runs-on": "ubuntu-latest", "steps": [{"run": "make", "shell": "bash"}]}},
    }
    definition = parse_pipeline_dict(config)
    assert "Unknown key 'runs-on' in job 'build' is ignored" in definition.warnings
    assert any("'shell'" in warning for warning in definition.warnings)

def test_missing_on_defaults_to_push():
    definition = parse_pipeline_dict({"jobs": {"build": {"steps": [{"run": "make"}]}}})
    assert [rule.event for rule in definition.triggers] == [EventKind.PUSH]
    assert any("defaulting to every push" in warning for warning in definition.warnings)

def test_unsupported_trigger_event():
    with pytest.raises(ParseError, match="Unsupported trigger event"):
        parse_pipeline_dict({"on": "deployment", "jobs": {"a": {"steps": [{"run": "true"}]}}})

def test_step_needs_exactly_one_of_run_or_uses():
    config = {"on": "push", "jobs": {"a": {"steps": [{"run": "make", "uses": "checkout"}]}}}
    with pytest.raises(ParseError, match="exactly one of 'run' or 'uses'"):
        parse_pipeline_dict(config)

def test_schedule_trigger():
    config = {
        "on": {"schedule": [{"cron": "*/15 * * * *"}, "@daily"]},
        "jobs": {"nightly": {"steps": [{"run": "make nightly"}]}},
    }
    definition = parse_pipeline_dict(config)
    assert [rule.cron for rule in definition.triggers] == ["*/15 * * * *", "@daily"]

def test_invalid_cron():
    config = {"on": {"schedule": [{"cron": "61 * * * *"}]}, "jobs": {"a": {"steps": [{"run": "true"}]}}}
    with pytest.raises(ParseError, match="out of range"):
        parse_pipeline_dict(config)

def test_secret_env_forms():
    config = {
        "on": "push",
        "env": {"NPM_TOKEN": {"secret": "NPM"}, "CI": True},
        "jobs": {"a": {"steps": [{"run": "true"}]}},
    }
    definition = parse_pipeline_dict(config)
    npm, ci = definition.env
    assert npm.secret == "NPM"
    assert ci.value == "true"

def test_embedded_secret_rejected():
    config = {
        "on": "push",
        "jobs": {"a": {"env": {"AUTH": "Bearer ${{ secrets.TOKEN }}"}, "steps": [{"run": "true"}]}},
    }
    with pytest.raises(ParseError, match="on its own"):
        parse_pipeline_dict(config)

def test_unknown_action():
    config = {"on": "push", "jobs": {"a": {"steps": [{"uses": "acme/deploy@v1"}]}}}
    with pytest.raises(ParseError, match="unknown action 'deploy'"):
        parse_pipeline_dict(config)

def test_upload_artifact_requires_name():
    config = {"on": "push", "jobs": {"a": {"steps": [{"uses": "upload-artifact", "with": {"path": "out"}}]}}}
    with pytest.raises(ParseError, match="requires option 'name'"):
        parse_pipeline_dict(config)

def test_artifact_actions_become_inputs_and_outputs():
    config = {
        "on": "push",
        "jobs": {
            "a": {"steps": [
                {"uses": "upload-artifact", "with": {"name": "dist", "path": "dist.tgz", "persist": True}},
                {"uses": "download-artifact", "with": {"name": "dist"}},
            ]},
        },
    }
    upload, download = parse_pipeline_dict(config).jobs["a"].steps
    assert upload.outputs[0].name == "dist"
    assert upload.outputs[0].persist is True
    assert download.inputs[0].name == "dist"
    assert download.inputs[0].path is None

def test_invalid_step_timeout():
    config = {"on": "push", "jobs": {"a": {"steps": [{"run": "true", "timeout": 0}]}}}
    with pytest.raises(ParseError, match="positive number of seconds"):
        parse_pipeline_dict(config)

def test_job_event_scoping():
    config = {
        "on": ["push", "release"],
        "jobs": {"publish": {"events": "release", "steps": [{"run": "make publish"}]}},
    }
    assert parse_pipeline_dict(config).jobs["publish"].events == [EventKind.RELEASE]

def test_environment_settings():
    config = {
        "on": "push",
        "environments": {"production": {"required-approvals": 2, "timeout": 3600}},
        "jobs": {"deploy": {"environment": {"name": "production"}, "steps": [{"run": "true"}]}},
    }
    definition = parse_pipeline_dict(config)
    assert definition.environments["production"].required_approvals == 2
    assert definition.environments["production"].timeout == 3600
    assert definition.jobs["deploy"].environment == "production"

def test_job_continue_on_error_makes_job_optional():
    config = {"on": "push", "jobs": {"lint": {"continue-on-error": True, "steps": [{"run": "true"}]}}}
    assert parse_pipeline_dict(config).jobs["lint"].required is False
