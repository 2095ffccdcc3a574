"""
Job executor - runs one job's steps in order through a step runner.

Artifacts are moved between the store and the job's workspace around each
step; secrets are resolved into the step environment only. Every line that
goes into the job log is masked first.
"""

import asyncio
import logging
import os
import shlex
import shutil
from typing import Any, Dict, List, Optional

from controller.src.dsl.conditions import evaluate_condition
from controller.src.errors import (
    ArtifactNotFoundError,
    ConditionEvaluationError,
    ConveyorError,
    StepExecutionError,
)
from controller.src.models.definition import JobSpec, PipelineDefinition, StepKind, StepSpec
from controller.src.models.run import JobExecution, Run, StepRecord, StepState, utcnow
from controller.src.services.artifacts import ArtifactStore
from controller.src.services.runners import StepInvocation, StepRunner
from controller.src.services.secrets import SecretStore
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)

def build_checkout_command(options: Dict[str, Any], run: Run) -> str:
    """Shell command for the `checkout` action."""
    clone_url = run.event.clone_url
    if not clone_url:
        raise StepExecutionError("Event carries no clone URL to check out")
    depth = int(options.get("depth", 1))
    path = options.get("path", ".")
    ref = options.get("ref") or run.event.commit_sha or run.event.branch

    commands = [f"git clone --depth {depth} {shlex.quote(clone_url)} {shlex.quote(path)}"]
    if ref:
        commands.append(f"git -C {shlex.quote(path)} fetch --depth {depth} origin {shlex.quote(ref)}")
        commands.append(f"git -C {shlex.quote(path)} checkout {shlex.quote(ref)}")
    # Join commands with && so it fails fast on error
    return " && ".join(commands)

class JobExecutor:
    def __init__(
        self,
        runner: StepRunner,
        artifacts: ArtifactStore,
        secrets: SecretStore,
        reporter: StatusReporter,
        workspace_root: str,
        step_timeout: int = 600,
    ):
        self.runner = runner
        self.artifacts = artifacts
        self.secrets = secrets
        self.reporter = reporter
        self.workspace_root = workspace_root
        self.step_timeout = step_timeout

    # -- workspace ---------------------------------------------------------

    def workspace(self, run_id: str, job_name: str) -> str:
        path = os.path.join(self.workspace_root, run_id, job_name)
        os.makedirs(path, exist_ok=True)
        return path

    def cleanup(self, run_id: str):
        """Remove a run's workspaces."""
        path = os.path.join(self.workspace_root, run_id)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clean up workspace {path}: {e}")

    def _inside(self, workspace: str, relative: Optional[str]) -> str:
        target = os.path.normpath(os.path.join(workspace, relative or "."))
        if os.path.commonpath([workspace, target]) != os.path.normpath(workspace):
            raise StepExecutionError(f"Path '{relative}' escapes the job workspace")
        return target

    # -- logging -----------------------------------------------------------

    def _log(self, run: Run, job: JobExecution, text: str):
        # Mask before splitting so multi-line secrets match whole
        job.logs.extend(self.secrets.mask(run.id, text).splitlines())

    # -- environment -------------------------------------------------------

    def build_env(self, run: Run, definition: PipelineDefinition, spec: JobSpec, step: StepSpec, workspace: str) -> Dict[str, str]:
        """Pipeline, job and step env merged over the built-in variables; later wins."""
        env = {
            "CONVEYOR_RUN_ID": run.id,
            "CONVEYOR_PIPELINE": run.pipeline,
            "CONVEYOR_JOB": spec.name,
            "CONVEYOR_STEP": step.name,
            "CONVEYOR_EVENT": run.event.kind.value,
            "CONVEYOR_BRANCH": run.event.branch,
            "CONVEYOR_SHA": run.event.commit_sha,
            "CONVEYOR_ACTOR": run.event.actor,
            "CONVEYOR_WORKSPACE": workspace,
        }
        for name, value in run.inputs.items():
            env[f"CONVEYOR_INPUT_{name.upper().replace('-', '_')}"] = value

        for binding in [*definition.env, *spec.env, *step.env]:
            if binding.secret is not None:
                env[binding.name] = self.secrets.resolve(binding.secret, run.id)
            else:
                env[binding.name] = binding.value
        return env

    # -- artifacts ---------------------------------------------------------

    def download_inputs(self, run: Run, step: StepSpec, workspace: str):
        for artifact in step.inputs:
            artifact_id = run.artifacts.get(artifact.name)
            if artifact_id is None:
                raise ArtifactNotFoundError(f"Artifact '{artifact.name}' was not produced in this run")
            data = self.artifacts.get(artifact_id)
            target = self._inside(workspace, artifact.path or artifact.name)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
            logger.info(f"Downloaded artifact '{artifact.name}' ({artifact_id}) to {target}")

    def upload_outputs(self, run: Run, job: JobExecution, step: StepSpec, workspace: str):
        for artifact in step.outputs:
            source = self._inside(workspace, artifact.path)
            if not os.path.isfile(source):
                raise ArtifactNotFoundError(f"Output '{artifact.name}' not found at '{artifact.path}'")
            with open(source, "rb") as f:
                data = f.read()
            artifact_id = self.artifacts.put(
                data,
                run_id=run.id,
                producer=f"{run.id}/{job.name}",
                name=artifact.name,
                persist=artifact.persist,
            )
            run.artifacts[artifact.name] = artifact_id
            if artifact_id not in job.artifacts:
                job.artifacts.append(artifact_id)
            self._log(run, job, f"Uploaded artifact '{artifact.name}' as {artifact_id}")

    # -- steps -------------------------------------------------------------

    def _command(self, run: Run, step: StepSpec) -> Optional[str]:
        if step.kind == StepKind.RUN:
            return step.run
        if step.uses == "checkout":
            return build_checkout_command(step.options, run)
        # Artifact actions have no command of their own
        return None

    def _should_run(self, run: Run, job: JobExecution, step: StepSpec, context: Dict[str, Any], failed: bool) -> bool:
        if step.condition is None:
            return not failed
        try:
            return evaluate_condition(step.condition, context, {"success": not failed, "failure": failed})
        except ConditionEvaluationError as e:
            job.annotations.append(f"Step '{step.name}' skipped: {e}")
            logger.warning(f"Condition of step '{step.name}' in job '{job.name}' could not be evaluated: {e}")
            return False

    async def execute_step(
        self,
        run: Run,
        definition: PipelineDefinition,
        spec: JobSpec,
        job: JobExecution,
        order: int,
        step: StepSpec,
        workspace: str,
    ):
        """
        Execute a single step.
        Raises a ConveyorError if the step failed.
        """
        env = self.build_env(run, definition, spec, step, workspace)
        self.download_inputs(run, step, workspace)

        command = self._command(run, step)
        if command is not None:
            self._log(run, job, f"$ {command}")
            outcome = await self.runner.run(StepInvocation(
                command=command,
                env=env,
                working_directory=self._inside(workspace, step.working_directory),
                timeout=step.timeout or self.step_timeout,
                run_id=run.id,
                job_name=job.name,
                step_name=step.name,
                step_order=order,
            ))
            self._log(run, job, outcome.stdout)
            self._log(run, job, outcome.stderr)
            job.steps[order].exit_code = outcome.exit_code
            if outcome.timed_out:
                raise StepExecutionError(f"Step '{step.name}' timed out", exit_code=outcome.exit_code)
            if outcome.exit_code != 0:
                raise StepExecutionError(
                    f"Step '{step.name}' exited with code {outcome.exit_code}",
                    exit_code=outcome.exit_code,
                )

        self.upload_outputs(run, job, step, workspace)

    def _finish_step(self, run: Run, job: JobExecution, order: int, state: StepState, error: Optional[str] = None):
        record = job.steps[order]
        record.state = state
        record.error = self.secrets.mask(run.id, error) if error else None
        record.log_end = len(job.logs)
        record.finished_at = utcnow()
        output = "\n".join(job.step_logs(order))
        self.reporter.step_status(run, job, order, record, message=record.error or output or None)

    async def run_job(self, run: Run, definition: PipelineDefinition, spec: JobSpec, context: Dict[str, Any]) -> bool:
        """
        Run every step of a job in order.
        Returns True if the job succeeded, False otherwise.
        """
        job = run.jobs[spec.name]
        workspace = self.workspace(run.id, spec.name)
        failed = False
        logger.info(f"Starting job '{spec.name}' of run {run.id} with {len(spec.steps)} steps")

        for order, step in enumerate(spec.steps):
            job.step_cursor = order
            record = job.steps[order]

            if not self._should_run(run, job, step, context, failed):
                record.log_start = len(job.logs)
                self._finish_step(run, job, order, StepState.SKIPPED)
                continue

            record.state = StepState.RUNNING
            record.started_at = utcnow()
            record.log_start = len(job.logs)
            self.reporter.step_status(run, job, order, record)

            try:
                await self.execute_step(run, definition, spec, job, order, step, workspace)
            except asyncio.CancelledError:
                self._finish_step(run, job, order, StepState.CANCELLED, "Step cancelled")
                for rest in range(order + 1, len(spec.steps)):
                    job.steps[rest].state = StepState.SKIPPED
                raise
            except ConveyorError as e:
                self._log(run, job, str(e))
                self._finish_step(run, job, order, StepState.FAILED, str(e))
                if step.continue_on_error:
                    job.annotations.append(f"Step '{step.name}' failed but continue-on-error is set: {self.secrets.mask(run.id, str(e))}")
                    logger.warning(f"Step '{step.name}' of job '{spec.name}' failed (continuing): {e}")
                else:
                    job.error = self.secrets.mask(run.id, str(e))
                    logger.error(f"Step '{step.name}' of job '{spec.name}' failed: {job.error}")
                    failed = True
                continue
            except Exception as e:
                logger.exception(f"Step '{step.name}' of job '{spec.name}' failed with exception")
                message = f"Step '{step.name}' failed: {e}"
                self._log(run, job, message)
                self._finish_step(run, job, order, StepState.FAILED, message)
                if step.continue_on_error:
                    job.annotations.append(self.secrets.mask(run.id, message))
                else:
                    job.error = self.secrets.mask(run.id, message)
                    failed = True
                continue

            self._finish_step(run, job, order, StepState.SUCCEEDED)

        job.step_cursor = len(spec.steps)
        return not failed

def initial_steps(spec: JobSpec) -> List[StepRecord]:
    return [StepRecord(name=step.name) for step in spec.steps]
