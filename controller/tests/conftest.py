"""Shared fixtures for controller tests."""

import asyncio
from typing import Callable, Dict, Optional, Tuple, Union

import pytest

from controller.src.services.runners import StepInvocation, StepOutcome
from controller.src.services.scheduler import Orchestrator
from controller.src.services.secrets import SecretStore, StaticSecretProvider

Result = Union[int, StepOutcome, Callable[[StepInvocation], StepOutcome]]

class FakeRunner:
    """
    In-memory step runner.

    `results` maps (job, step) to an exit code, a StepOutcome or a callable
    building one; unlisted steps exit 0. Jobs named in `holds` wait on the
    given event before finishing.
    """

    def __init__(
        self,
        results: Optional[Dict[Tuple[str, str], Result]] = None,
        delay: float = 0.0,
        holds: Optional[Dict[str, asyncio.Event]] = None,
    ):
        self.results = results or {}
        self.delay = delay
        self.holds = holds or {}
        self.calls = []
        self.invocations = {}
        self.active = 0
        self.max_active = 0

    async def run(self, invocation: StepInvocation) -> StepOutcome:
        key = (invocation.job_name, invocation.step_name)
        self.calls.append(key)
        self.invocations[key] = invocation
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            hold = self.holds.get(invocation.job_name)
            if hold is not None:
                await hold.wait()
        finally:
            self.active -= 1

        result = self.results.get(key, 0)
        if callable(result):
            return result(invocation)
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome(exit_code=result, stdout=f"ran {invocation.command}")

@pytest.fixture
def make_runner():
    return FakeRunner

@pytest.fixture
def make_orchestrator(tmp_path):
    def factory(runner=None, secrets=None, **kwargs):
        return Orchestrator(
            runner=runner or FakeRunner(),
            secrets=SecretStore(StaticSecretProvider(secrets or {})),
            workspace_root=str(tmp_path / "workspaces"),
            **kwargs,
        )
    return factory
