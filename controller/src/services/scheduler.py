"""
Job scheduler - drives runs from creation to a terminal state.

One RunCoordinator owns each run's job table. Jobs run as asyncio tasks up
to a parallelism limit; concurrency groups serialise jobs across every run of
the same Orchestrator. Every job transition sets the coordinator's wake-up
event, and the coordinator clears it before each scan, so no transition can
be missed.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Tuple

from controller.src.dsl.conditions import evaluate_condition
from controller.src.errors import (
    ConditionEvaluationError,
    GateNotFoundError,
    GateRejectedError,
    GateTimeoutError,
    RunNotFoundError,
)
from controller.src.models.definition import JobSpec, PipelineDefinition
from controller.src.models.run import (
    JobExecution,
    JobState,
    RepositoryEvent,
    Run,
    RunStatus,
    StepState,
    utcnow,
)
from controller.src.services import triggers
from controller.src.services.artifacts import ArtifactStore
from controller.src.services.executor import JobExecutor, initial_steps
from controller.src.services.gates import EnvironmentGate, GateRegistry, GateState
from controller.src.services.graph import resolve
from controller.src.services.runners import StepRunner
from controller.src.services.secrets import SecretStore, StaticSecretProvider
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)

class JobHandle:
    """Identifies one job of one run to a concurrency group."""

    def __init__(self, coordinator: "RunCoordinator", job_name: str):
        self.coordinator = coordinator
        self.job_name = job_name

    @property
    def label(self) -> str:
        return f"{self.coordinator.run.id}/{self.job_name}"

    def supersede(self, reason: str):
        self.coordinator.cancel_job(self.job_name, reason, superseded=True)

class ConcurrencyGroups:
    """
    At most one job per group runs at a time, across runs.

    Without cancel-in-progress, members queue FIFO. With it, a newcomer
    cancels the current holder and every older waiter, then takes the group
    once the holder has released it.
    """

    def __init__(self):
        self._holders: Dict[str, JobHandle] = {}
        self._waiters: Dict[str, Deque[Tuple[JobHandle, asyncio.Future]]] = {}

    def holder(self, group: str) -> Optional[JobHandle]:
        return self._holders.get(group)

    async def acquire(self, group: str, handle: JobHandle, cancel_in_progress: bool = False):
        if cancel_in_progress:
            reason = f"Superseded by {handle.label} in concurrency group '{group}'"
            holder = self._holders.get(group)
            if holder is not None and holder is not handle:
                holder.supersede(reason)
            for waiter, future in list(self._waiters.get(group, ())):
                if not future.done():
                    waiter.supersede(reason)

        if group not in self._holders:
            self._holders[group] = handle
            return

        future = asyncio.get_running_loop().create_future()
        queue = self._waiters.setdefault(group, deque())
        queue.append((handle, future))
        logger.info(f"Job {handle.label} waiting for concurrency group '{group}'")
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Ownership was handed over just before cancellation
                self.release(group, handle)
            elif (handle, future) in queue:
                queue.remove((handle, future))
            raise

    def release(self, group: str, handle: JobHandle):
        if self._holders.get(group) is not handle:
            return
        del self._holders[group]
        queue = self._waiters.get(group)
        while queue:
            waiter, future = queue.popleft()
            if future.done():
                continue
            self._holders[group] = waiter
            future.set_result(None)
            break
        if queue is not None and not queue:
            self._waiters.pop(group, None)

class RunCoordinator:
    def __init__(self, orchestrator: "Orchestrator", run: Run, definition: PipelineDefinition):
        self.orchestrator = orchestrator
        self.run = run
        self.definition = definition
        self._wakeup = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_reasons: Dict[str, str] = {}
        self._superseded: Set[str] = set()

    @property
    def reporter(self) -> StatusReporter:
        return self.orchestrator.reporter

    # -- transitions -------------------------------------------------------

    def transition(self, job: JobExecution, state: JobState, message: Optional[str] = None):
        """Apply a job state change and wake the coordinator."""
        job.state = state
        if state == JobState.RUNNING:
            job.started_at = utcnow()
        elif job.is_terminal:
            job.finished_at = utcnow()
            for step in job.steps:
                if step.state == StepState.PENDING:
                    step.state = StepState.SKIPPED
        self.reporter.job_status(self.run, job, message)
        self._wakeup.set()

    def _fail(self, job: JobExecution, error: str):
        job.error = self.orchestrator.secrets.mask(self.run.id, error)
        self.transition(job, JobState.FAILED, job.error)

    # -- scheduling --------------------------------------------------------

    def context(self, spec: JobSpec) -> Dict[str, Any]:
        event = self.run.event
        return {
            "event": event.kind.value,
            "branch": event.branch,
            "actor": event.actor,
            "ref": event.ref,
            "environment": spec.environment,
            "inputs": dict(self.run.inputs),
            "needs": {
                dep: {"result": self.run.jobs[dep].state.value}
                for dep in spec.needs
            },
        }

    def should_run(self, spec: JobSpec) -> Tuple[bool, Optional[str]]:
        """Evaluate a job's condition once all its needs are terminal."""
        needs = [self.run.jobs[dep] for dep in spec.needs]
        status = {
            "success": all(n.state == JobState.SUCCEEDED for n in needs),
            "failure": any(n.state == JobState.FAILED for n in needs),
        }
        if spec.condition is None:
            return status["success"], None
        try:
            return evaluate_condition(spec.condition, self.context(spec), status), None
        except ConditionEvaluationError as e:
            return False, f"Condition could not be evaluated: {e}"

    def scan(self):
        """Move pending jobs whose needs are all terminal to skipped, blocked or ready."""
        for name in self.run.order:
            job = self.run.jobs[name]
            if job.state != JobState.PENDING:
                continue
            spec = self.definition.jobs[name]
            if not all(self.run.jobs[dep].is_terminal for dep in spec.needs):
                continue

            run_it, warning = self.should_run(spec)
            if warning:
                job.annotations.append(warning)
                self.run.warnings.append(f"Job '{name}': {warning}")
                logger.warning(f"Job '{name}' of run {self.run.id} skipped: {warning}")
            if not run_it:
                self.transition(job, JobState.SKIPPED, warning)
                continue

            gate = None
            if spec.environment:
                gate = self.orchestrator.open_gate(self.run, self.definition, spec.environment)
                self.transition(job, JobState.BLOCKED, f"Waiting for approval of environment '{spec.environment}'")
            else:
                self.transition(job, JobState.READY)

            task = asyncio.create_task(self._run_job(spec, gate), name=f"{self.run.id}/{name}")
            self._tasks[name] = task
            task.add_done_callback(lambda t, n=name: self._job_done(n, t))

    async def _run_job(self, spec: JobSpec, gate: Optional[EnvironmentGate]):
        job = self.run.jobs[spec.name]
        group = spec.concurrency.group if spec.concurrency else None
        handle = JobHandle(self, spec.name)
        acquired = False
        try:
            if gate is not None:
                state = await gate.wait()
                if state == GateState.REJECTED:
                    reason = f": {gate.reason}" if gate.reason else ""
                    error = GateRejectedError(f"Environment '{gate.environment}' rejected by {gate.rejected_by}{reason}")
                    self._fail(job, str(error))
                    return
                if state != GateState.APPROVED:
                    error = GateTimeoutError(f"Environment '{gate.environment}' approval timed out")
                    self._fail(job, str(error))
                    return
                self.transition(job, JobState.READY)

            if group is not None:
                await self.orchestrator.groups.acquire(group, handle, spec.concurrency.cancel_in_progress)
                acquired = True

            async with self.orchestrator.slots:
                self.transition(job, JobState.RUNNING)
                succeeded = await self.orchestrator.executor.run_job(
                    self.run, self.definition, spec, self.context(spec)
                )
            if succeeded:
                self.transition(job, JobState.SUCCEEDED)
            else:
                self.transition(job, JobState.FAILED, job.error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Job '{spec.name}' of run {self.run.id} failed with exception")
            self._fail(job, f"Job failed: {e}")
        finally:
            if acquired:
                self.orchestrator.groups.release(group, handle)

    def _job_done(self, name: str, task: asyncio.Task):
        self._tasks.pop(name, None)
        job = self.run.jobs[name]
        if not job.is_terminal:
            if task.cancelled():
                reason = self._cancel_reasons.get(name, "Job cancelled")
                job.error = reason
                if name in self._superseded:
                    job.annotations.append(reason)
                self.transition(job, JobState.CANCELLED, reason)
            else:
                error = task.exception()
                logger.error(f"Job '{name}' of run {self.run.id} ended without a final state: {error}")
                self._fail(job, f"Job ended unexpectedly: {error}")
        self._wakeup.set()

    # -- cancellation ------------------------------------------------------

    def cancel_job(self, name: str, reason: str, superseded: bool = False):
        job = self.run.jobs[name]
        if job.is_terminal:
            return
        if superseded:
            self._superseded.add(name)
        task = self._tasks.get(name)
        if task is not None:
            self._cancel_reasons[name] = reason
            task.cancel()
            logger.info(f"Cancelling job '{name}' of run {self.run.id}: {reason}")
        else:
            job.error = reason
            self.transition(job, JobState.CANCELLED, reason)

    def cancel(self, reason: str = "Run cancelled"):
        """Cancel every non-terminal job of the run."""
        self.run.cancel_requested = True
        for name in self.run.order:
            self.cancel_job(name, reason)
        self._wakeup.set()

    # -- driving -----------------------------------------------------------

    async def execute(self) -> Run:
        run = self.run
        run.status = RunStatus.RUNNING
        run.started_at = utcnow()
        self.reporter.run_status(run)

        try:
            while True:
                self._wakeup.clear()
                if not run.cancel_requested:
                    self.scan()
                if run.is_terminal and not self._tasks:
                    break
                await self._wakeup.wait()
        except asyncio.CancelledError:
            self.cancel("Orchestrator shutting down")
            if self._tasks:
                await asyncio.gather(*self._tasks.values(), return_exceptions=True)
            self.finish()
            raise

        self.finish()
        return run

    def finish(self):
        run = self.run
        if run.cancel_requested:
            run.status = RunStatus.CANCELLED
        elif any(job.state == JobState.FAILED and job.required for job in run.jobs.values()):
            run.status = RunStatus.FAILED
        elif any(job.state == JobState.CANCELLED for job in run.jobs.values()):
            run.status = RunStatus.CANCELLED
        else:
            run.status = RunStatus.SUCCEEDED
        run.finished_at = utcnow()
        self.reporter.run_status(run)
        self.orchestrator.release(run)

class Orchestrator:
    """
    Creates and executes runs.

    Holds no process-wide state: any number of orchestrators, and any number
    of runs per orchestrator, can exist side by side.
    """

    def __init__(
        self,
        runner: StepRunner,
        artifacts: Optional[ArtifactStore] = None,
        secrets: Optional[SecretStore] = None,
        gates: Optional[GateRegistry] = None,
        reporter: Optional[StatusReporter] = None,
        max_parallel_jobs: int = 4,
        workspace_root: str = "/tmp/conveyor",
        step_timeout: int = 600,
    ):
        if max_parallel_jobs < 1:
            raise ValueError("max_parallel_jobs must be at least 1")
        self.runner = runner
        self.artifacts = artifacts or ArtifactStore()
        self.secrets = secrets or SecretStore(StaticSecretProvider())
        self.gates = gates or GateRegistry()
        self.reporter = reporter or StatusReporter(self.secrets)
        self.max_parallel_jobs = max_parallel_jobs
        self.groups = ConcurrencyGroups()
        self._slots: Optional[asyncio.Semaphore] = None
        self.executor = JobExecutor(
            runner=runner,
            artifacts=self.artifacts,
            secrets=self.secrets,
            reporter=self.reporter,
            workspace_root=workspace_root,
            step_timeout=step_timeout,
        )
        self.runs: Dict[str, Run] = {}
        self._definitions: Dict[str, PipelineDefinition] = {}
        self._coordinators: Dict[str, RunCoordinator] = {}
        self._early_decisions: Dict[Tuple[str, str], List[Tuple[str, str, Optional[str]]]] = {}

    def create_run(
        self,
        definition: PipelineDefinition,
        event: RepositoryEvent,
        candidates: Optional[Iterable[str]] = None,
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Run:
        """
        Create a run for `event`. Candidate jobs are taken from the trigger
        evaluator unless given. Raises CycleError/UnknownJobError before any
        job exists.
        """
        if candidates is None:
            candidates = triggers.evaluate(definition, event, now)
        resolution = resolve(candidates, definition.needs_edges())
        order = resolution.order() + resolution.pruned

        jobs: Dict[str, JobExecution] = {}
        for name in order:
            spec = definition.jobs[name]
            jobs[name] = JobExecution(
                name=name,
                required=spec.required,
                environment=spec.environment,
                steps=initial_steps(spec),
            )
        for name in resolution.pruned:
            job = jobs[name]
            job.state = JobState.SKIPPED
            job.annotations.append(f"Not triggered by {event.kind.value} event")
            for step in job.steps:
                step.state = StepState.SKIPPED

        fields = {"id": run_id} if run_id else {}
        run = Run(
            pipeline=definition.name,
            event=event,
            jobs=jobs,
            order=order,
            inputs=triggers.resolve_inputs(definition, event),
            warnings=list(definition.warnings),
            **fields,
        )
        self.runs[run.id] = run
        self._definitions[run.id] = definition
        logger.info(f"Created run {run.id} of '{definition.name}' with {len(resolution.order())} candidate jobs")
        self.reporter.run_status(run)
        return run

    @property
    def slots(self) -> asyncio.Semaphore:
        """Worker pool shared by every run of this orchestrator."""
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.max_parallel_jobs)
        return self._slots

    def get_run(self, run_id: str) -> Run:
        try:
            return self.runs[run_id]
        except KeyError:
            raise RunNotFoundError(f"Run {run_id} not found")

    async def execute(self, run: Run) -> Run:
        """Drive `run` to a terminal state and return it."""
        definition = self._definitions[run.id]
        coordinator = RunCoordinator(self, run, definition)
        self._coordinators[run.id] = coordinator
        return await coordinator.execute()

    async def run_event(self, definition: PipelineDefinition, event: RepositoryEvent) -> Run:
        return await self.execute(self.create_run(definition, event))

    def cancel(self, run_id: str, reason: str = "Run cancelled") -> bool:
        """Cancel a run. Returns False if the run is unknown or already finished."""
        run = self.runs.get(run_id)
        if run is None or run.status in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED):
            return False
        coordinator = self._coordinators.get(run_id)
        if coordinator is not None:
            coordinator.cancel(reason)
            return True

        # Not executing yet: nothing is in flight
        run.cancel_requested = True
        for job in run.jobs.values():
            if not job.is_terminal:
                job.state = JobState.CANCELLED
                job.error = reason
                for step in job.steps:
                    if step.state == StepState.PENDING:
                        step.state = StepState.SKIPPED
        logger.info(f"Cancelled queued run {run_id}")
        return True

    def open_gate(self, run: Run, definition: PipelineDefinition, environment: str) -> EnvironmentGate:
        spec = definition.environments.get(environment)
        gate = self.gates.open(
            run.id,
            environment,
            required_approvals=spec.required_approvals if spec else None,
            timeout=spec.timeout if spec else None,
        )
        for kind, approver, reason in self._early_decisions.pop((run.id, environment), []):
            if kind == "approve":
                gate.approve(approver)
            else:
                gate.reject(approver, reason)
        return gate

    def _decide(self, run_id: str, environment: str, kind: str, approver: str, reason: Optional[str] = None) -> GateState:
        run = self.get_run(run_id)
        try:
            gate = self.gates.get(run_id, environment)
        except GateNotFoundError:
            if not any(job.environment == environment and not job.is_terminal for job in run.jobs.values()):
                raise
            # Applied when the first job targeting the environment opens the gate
            self._early_decisions.setdefault((run_id, environment), []).append((kind, approver, reason))
            logger.info(f"Recorded early {kind} by {approver} for '{environment}' in run {run_id}")
            return GateState.PENDING
        if kind == "approve":
            return gate.approve(approver)
        return gate.reject(approver, reason)

    def approve(self, run_id: str, environment: str, approver: str) -> GateState:
        return self._decide(run_id, environment, "approve", approver)

    def reject(self, run_id: str, environment: str, approver: str, reason: Optional[str] = None) -> GateState:
        return self._decide(run_id, environment, "reject", approver, reason)

    def release(self, run: Run):
        """Tear down per-run state once a run is terminal."""
        self._coordinators.pop(run.id, None)
        for key in [key for key in self._early_decisions if key[0] == run.id]:
            del self._early_decisions[key]
        self.gates.discard_run(run.id)
        self.artifacts.release_run(run.id)
        self.secrets.forget_run(run.id)
        self.executor.cleanup(run.id)

    def forget(self, run_id: str):
        """Drop a finished run from memory."""
        self.runs.pop(run_id, None)
        self._definitions.pop(run_id, None)
