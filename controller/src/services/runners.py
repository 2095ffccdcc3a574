"""
Step runners - execute one step command and report its outcome.

The orchestrator treats runners as opaque: it hands over a command,
environment, working directory and timeout, and gets back an exit code and
captured output.
"""

import asyncio
import logging
import os
import signal
from typing import Dict, Iterable, Optional, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124

class StepInvocation(BaseModel):
    command: str
    env: Dict[str, str] = {}
    working_directory: Optional[str] = None
    timeout: int = 600
    run_id: str = ""
    job_name: str = ""
    step_name: str = ""
    step_order: int = 0

class StepOutcome(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

class StepRunner(Protocol):
    async def run(self, invocation: StepInvocation) -> StepOutcome:
        ...

class LocalProcessRunner:
    """
    Runs steps as local shell processes.

    Each step gets its own process group so cancellation reaches every child
    the shell spawned: SIGTERM first, SIGKILL after the grace period.
    """

    def __init__(
        self,
        grace_period: float = 10.0,
        shell: str = "/bin/sh",
        inherit_env: bool = True,
        exclude_env_prefixes: Iterable[str] = ("CONVEYOR_SECRET_",),
    ):
        self.grace_period = grace_period
        self.shell = shell
        self.inherit_env = inherit_env
        self.exclude_env_prefixes = tuple(exclude_env_prefixes)

    def _environment(self, extra: Dict[str, str]) -> Dict[str, str]:
        env = {}
        if self.inherit_env:
            env = {
                key: value for key, value in os.environ.items()
                if not key.startswith(self.exclude_env_prefixes)
            }
        env.update(extra)
        return env

    async def run(self, invocation: StepInvocation) -> StepOutcome:
        logger.info(f"Running step '{invocation.step_name}' of job '{invocation.job_name}'")
        proc = await asyncio.create_subprocess_exec(
            self.shell, "-c", invocation.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=invocation.working_directory,
            env=self._environment(invocation.env),
            start_new_session=True,
        )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=invocation.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Step '{invocation.step_name}' timed out after {invocation.timeout}s")
            await self.terminate(proc)
            return StepOutcome(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Step timed out after {invocation.timeout}s",
                timed_out=True,
            )
        except asyncio.CancelledError:
            logger.warning(f"Step '{invocation.step_name}' cancelled, terminating process {proc.pid}")
            await self.terminate(proc)
            raise

        return StepOutcome(
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def terminate(self, proc: asyncio.subprocess.Process):
        """Send SIGTERM to the step's process group, then SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Process {proc.pid} ignored SIGTERM for {self.grace_period}s, killing")
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
