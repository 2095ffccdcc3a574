"""Tests for queue message handling in the worker."""

import asyncio
import json

from controller.src import worker as worker_module
from controller.src.models.run import JobState
from controller.src.worker import CONTROL_QUEUE, RUN_QUEUE, Worker, build_runner
from controller.src.config import Settings
from controller.src.services.runners import LocalProcessRunner

DEFINITION = """
on: push
jobs:
  build:
    steps:
      - run: make
  deploy:
    needs: build
    environment: production
    steps:
      - run: ./deploy.sh
"""

def run_message(run_id, definition=DEFINITION):
    return json.dumps({
        "type": "run",
        "run_id": run_id,
        "definition": definition,
        "event": {"kind": "push", "branch": "main", "actor": "octocat"},
    })

def control_message(kind, run_id, **fields):
    return json.dumps({"type": kind, "run_id": run_id, **fields})

async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)

def test_run_and_approve_through_queue(make_orchestrator, make_runner):
    runner = make_runner()
    orchestrator = make_orchestrator(runner)
    worker = Worker(orchestrator, "redis://localhost:6379/0")
    events = []
    orchestrator.reporter.subscribe(events.append)

    async def scenario():
        await worker.dispatch(RUN_QUEUE, run_message("run-1"))
        run = orchestrator.get_run("run-1")
        await wait_until(lambda: run.jobs["deploy"].state == JobState.BLOCKED)
        await worker.dispatch(
            CONTROL_QUEUE, control_message("approve", "run-1", environment="production", approver="alice")
        )
        await asyncio.gather(*list(worker._tasks))

    asyncio.run(scenario())

    run_states = [e.state for e in events if e.run_id == "run-1" and e.job_name is None]
    assert run_states[-1] == "succeeded"
    assert runner.calls == [("build", "make"), ("deploy", "./deploy.sh")]
    # Finished runs are dropped from memory
    assert "run-1" not in orchestrator.runs

def test_cancel_through_queue(make_orchestrator, make_runner):
    orchestrator = make_orchestrator(make_runner())
    worker = Worker(orchestrator, "redis://localhost:6379/0")
    events = []
    orchestrator.reporter.subscribe(events.append)

    async def scenario():
        await worker.dispatch(RUN_QUEUE, run_message("run-2"))
        run = orchestrator.get_run("run-2")
        await wait_until(lambda: run.jobs["deploy"].state == JobState.BLOCKED)
        await worker.dispatch(CONTROL_QUEUE, control_message("cancel", "run-2"))
        await asyncio.gather(*list(worker._tasks))

    asyncio.run(scenario())

    run_states = [e.state for e in events if e.job_name is None]
    assert run_states[-1] == "cancelled"

def test_bad_messages_are_discarded(make_orchestrator):
    orchestrator = make_orchestrator()
    worker = Worker(orchestrator, "redis://localhost:6379/0")

    async def scenario():
        await worker.dispatch(RUN_QUEUE, "not json")
        await worker.dispatch(RUN_QUEUE, run_message("bad", definition="jobs: {}"))
        await worker.dispatch(RUN_QUEUE, json.dumps({"type": "run", "run_id": "no-definition"}))
        await worker.dispatch(CONTROL_QUEUE, control_message("cancel", "unknown"))
        await worker.dispatch(CONTROL_QUEUE, control_message("approve", "unknown", environment="production"))
        await worker.dispatch(CONTROL_QUEUE, control_message("approve", "unknown"))
        await worker.dispatch(CONTROL_QUEUE, control_message("restart", "unknown"))

    asyncio.run(scenario())
    assert orchestrator.runs == {}
    assert not worker._tasks

def test_build_runner():
    runner = build_runner(Settings(step_runner="local", cancel_grace_period=3))
    assert isinstance(runner, LocalProcessRunner)
    assert runner.grace_period == 3

def test_cancel_arriving_before_run_message(make_orchestrator, make_runner):
    runner = make_runner()
    orchestrator = make_orchestrator(runner)
    worker = Worker(orchestrator, "redis://localhost:6379/0")
    events = []
    orchestrator.reporter.subscribe(events.append)

    async def scenario():
        # Control messages are popped first, so the cancel can overtake its run
        await worker.dispatch(CONTROL_QUEUE, control_message("cancel", "run-3"))
        await worker.dispatch(RUN_QUEUE, run_message("run-3"))
        await asyncio.gather(*list(worker._tasks))

    asyncio.run(scenario())

    assert runner.calls == []
    run_states = [e.state for e in events if e.run_id == "run-3" and e.job_name is None]
    assert run_states[-1] == "cancelled"
    assert worker._deferred == {}

def test_approval_arriving_before_run_message(make_orchestrator, make_runner):
    runner = make_runner()
    orchestrator = make_orchestrator(runner)
    worker = Worker(orchestrator, "redis://localhost:6379/0")

    async def scenario():
        await worker.dispatch(
            CONTROL_QUEUE, control_message("approve", "run-4", environment="production", approver="alice")
        )
        await worker.dispatch(RUN_QUEUE, run_message("run-4"))
        await asyncio.wait_for(asyncio.gather(*list(worker._tasks)), timeout=5)

    asyncio.run(scenario())
    assert runner.calls == [("build", "make"), ("deploy", "./deploy.sh")]

def test_held_control_messages_are_bounded(make_orchestrator, monkeypatch):
    monkeypatch.setattr(worker_module, "MAX_DEFERRED_RUNS", 2)
    worker = Worker(make_orchestrator(), "redis://localhost:6379/0")

    async def scenario():
        for run_id in ("a", "b", "c"):
            await worker.dispatch(CONTROL_QUEUE, control_message("cancel", run_id))

    asyncio.run(scenario())
    assert list(worker._deferred) == ["b", "c"]

def test_run_uses_jobs_chosen_at_enqueue_time(make_orchestrator, make_runner):
    definition = """
on:
  schedule:
    - cron: "0 3 * * *"
jobs:
  nightly:
    steps:
      - run: make nightly
"""
    runner = make_runner()
    orchestrator = make_orchestrator(runner)
    worker = Worker(orchestrator, "redis://localhost:6379/0")
    message = json.dumps({
        "type": "run",
        "run_id": "run-5",
        "definition": definition,
        # No cron tick: the controller's clock would not match 03:00
        "event": {"kind": "schedule", "branch": "main"},
        "jobs": ["nightly"],
    })

    async def scenario():
        await worker.dispatch(RUN_QUEUE, message)
        await asyncio.gather(*list(worker._tasks))

    asyncio.run(scenario())
    assert runner.calls == [("nightly", "make nightly")]
