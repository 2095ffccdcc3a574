"""
Queue worker - pulls runs and control messages from Redis and drives them.

Messages on `conveyor:runs`:
    {"type": "run", "run_id": ..., "definition": "<yaml text>", "event": {...}, "jobs": [...]}
Messages on `conveyor:control`:
    {"type": "cancel", "run_id": ...}
    {"type": "approve", "run_id": ..., "environment": ..., "approver": ...}
    {"type": "reject", "run_id": ..., "environment": ..., "approver": ..., "reason": ...}
"""

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

import redis
import redis.asyncio as aioredis

from controller.src.config import Settings, get_settings
from controller.src.errors import ConveyorError
from controller.src.models.run import RepositoryEvent
from controller.src.services.artifacts import ArtifactStore
from controller.src.services.gates import GateRegistry
from controller.src.services.pipeline_parser import parse_pipeline_config, parse_pipeline_dict
from controller.src.services.runners import LocalProcessRunner
from controller.src.services.scheduler import Orchestrator
from controller.src.services.secrets import EnvSecretProvider, SecretStore
from controller.src.services.status_reporter import DatabaseStatusSink, StatusEvent, StatusReporter

logger = logging.getLogger(__name__)

RUN_QUEUE = "conveyor:runs"
CONTROL_QUEUE = "conveyor:control"
STATUS_HASH = "conveyor:status"
CONTROL_TYPES = ("cancel", "approve", "reject")

GC_INTERVAL = 300
MAX_DEFERRED_RUNS = 1000

class RedisStatusSink:
    """Mirrors run status into the status hash the API reads."""

    def __init__(self, redis_url: str):
        self.client = redis.from_url(redis_url, decode_responses=True)

    def __call__(self, event: StatusEvent):
        if event.job_name is None:
            self.client.hset(STATUS_HASH, event.run_id, event.state)

def build_runner(settings: Settings):
    if settings.step_runner == "kubernetes":
        from controller.src.k8s.runner import KubernetesStepRunner
        return KubernetesStepRunner(image=settings.k8s_default_image, namespace=settings.k8s_namespace)
    if settings.step_runner != "local":
        raise ValueError(f"Unknown step runner '{settings.step_runner}'")
    return LocalProcessRunner(
        grace_period=settings.cancel_grace_period,
        exclude_env_prefixes=(settings.secret_env_prefix,),
    )

def build_orchestrator(settings: Optional[Settings] = None) -> Orchestrator:
    settings = settings or get_settings()
    secrets = SecretStore(EnvSecretProvider(prefix=settings.secret_env_prefix))
    reporter = StatusReporter(secrets)
    reporter.subscribe(DatabaseStatusSink())
    reporter.subscribe(RedisStatusSink(settings.redis_url))
    return Orchestrator(
        runner=build_runner(settings),
        artifacts=ArtifactStore(retention=settings.artifact_retention),
        secrets=secrets,
        gates=GateRegistry(
            required_approvals=settings.gate_required_approvals,
            timeout=settings.gate_timeout,
        ),
        reporter=reporter,
        max_parallel_jobs=settings.max_parallel_jobs,
        workspace_root=settings.workspace_root,
        step_timeout=settings.step_timeout,
    )

class Worker:
    def __init__(self, orchestrator: Orchestrator, redis_url: str):
        self.orchestrator = orchestrator
        self.redis_url = redis_url
        self._tasks: Set[asyncio.Task] = set()
        self._deferred: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()

    async def start_run(self, message: Dict[str, Any]):
        run_id = message.get("run_id", "unknown")
        try:
            source = message["definition"]
            if isinstance(source, str):
                definition = parse_pipeline_config(source)
            else:
                definition = parse_pipeline_dict(source)
            event = RepositoryEvent(**message["event"])
            run = self.orchestrator.create_run(definition, event, candidates=message.get("jobs"), run_id=run_id)
        except ConveyorError as e:
            logger.error(f"Rejected run {run_id}: {e}")
            return
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed run message for {run_id}: {e}")
            return

        for held in self._deferred.pop(run.id, []):
            self._apply_control(held)

        task = asyncio.create_task(self._execute(run), name=f"run-{run.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, run):
        try:
            await self.orchestrator.execute(run)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Failed to execute pipeline run {run.id}")
        finally:
            self.orchestrator.forget(run.id)

    def handle_control(self, message: Dict[str, Any]):
        kind = message.get("type")
        if kind not in CONTROL_TYPES:
            logger.warning(f"Unknown control message type '{kind}'")
            return
        run_id = message.get("run_id", "")
        if run_id not in self.orchestrator.runs:
            # The run message may still be waiting behind this one
            self._defer(run_id, message)
            return
        self._apply_control(message)

    def _defer(self, run_id: str, message: Dict[str, Any]):
        self._deferred.setdefault(run_id, []).append(message)
        self._deferred.move_to_end(run_id)
        while len(self._deferred) > MAX_DEFERRED_RUNS:
            dropped, _ = self._deferred.popitem(last=False)
            logger.warning(f"Dropping held control messages for run {dropped}")
        logger.info(f"Holding {message.get('type')} for run {run_id} until it is queued")

    def _apply_control(self, message: Dict[str, Any]):
        kind = message.get("type")
        run_id = message.get("run_id", "")
        try:
            if kind == "cancel":
                if not self.orchestrator.cancel(run_id, message.get("reason") or "Cancelled by user"):
                    logger.info(f"Ignoring cancel for finished run {run_id}")
            elif kind == "approve":
                state = self.orchestrator.approve(run_id, message["environment"], message.get("approver", ""))
                logger.info(f"Gate '{message['environment']}' of run {run_id} is {state.value}")
            else:
                state = self.orchestrator.reject(
                    run_id, message["environment"], message.get("approver", ""), message.get("reason")
                )
                logger.info(f"Gate '{message['environment']}' of run {run_id} is {state.value}")
        except ConveyorError as e:
            logger.warning(f"Control message {kind} for run {run_id} failed: {e}")
        except KeyError as e:
            logger.error(f"Malformed control message {kind}: missing {e}")

    async def dispatch(self, queue: str, data: str):
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"Discarding undecodable message on {queue}: {e}")
            return
        if queue == CONTROL_QUEUE:
            self.handle_control(message)
        else:
            await self.start_run(message)

    async def collect_garbage(self):
        while True:
            await asyncio.sleep(GC_INTERVAL)
            removed = self.orchestrator.artifacts.collect_garbage()
            if removed:
                logger.info(f"Collected {len(removed)} expired artifacts")

    async def loop(self):
        """Main worker loop."""
        client = aioredis.from_url(self.redis_url, decode_responses=True)
        gc_task = asyncio.create_task(self.collect_garbage())
        logger.info("Worker started, waiting for runs...")

        try:
            while True:
                try:
                    # Control messages first: brpop checks keys in order
                    result = await client.brpop([CONTROL_QUEUE, RUN_QUEUE], timeout=5)
                    if result:
                        queue, data = result
                        await self.dispatch(queue, data)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Worker error: {e}")
                    await asyncio.sleep(5)
        finally:
            gc_task.cancel()
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            await client.aclose()

def run_worker():
    """Entry point for worker."""
    settings = get_settings()
    worker = Worker(build_orchestrator(settings), settings.redis_url)
    try:
        asyncio.run(worker.loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
