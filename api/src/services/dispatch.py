"""
Turn repository events into queued pipeline runs.

Shared by the GitHub webhook and the manual/schedule event endpoint: fetch
the definition at the event's commit, evaluate triggers, persist the run and
its jobs, then hand the run to the controller.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.models.pipeline import JobRun, PipelineRun, Repository
from api.src.services.github import (
    RepositoryError,
    cleanup_repo,
    clone_repository,
    fetch_pipeline_config,
)
from api.src.services.queue import enqueue_pipeline_run
from controller.src.errors import ParseError
from controller.src.models.definition import EventKind
from controller.src.models.run import RepositoryEvent
from controller.src.services.graph import resolve
from controller.src.services.pipeline_parser import parse_pipeline_config
from controller.src.services.triggers import evaluate as evaluate_triggers

logger = logging.getLogger(__name__)

def repository_names(clone_url: str) -> Tuple[str, str]:
    """https://github.com/user/repo.git -> ("repo", "user/repo")"""
    path = clone_url.rstrip("/")
    if path.endswith(".git"):
        path = path[:-4]
    parts = path.replace(":", "/").split("/")
    name = parts[-1]
    full_name = "/".join(parts[-2:]) if len(parts) >= 2 else name
    return name, full_name

async def get_or_create_repository(db: AsyncSession, event: RepositoryEvent) -> Repository:
    name, full_name = repository_names(event.clone_url)
    full_name = event.repository or full_name

    result = await db.execute(select(Repository).where(Repository.full_name == full_name))
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=full_name.rsplit("/", 1)[-1] or name,
            full_name=full_name,
            clone_url=event.clone_url,
        )
        db.add(repository)
        await db.flush()
    return repository

async def load_definition(event: RepositoryEvent):
    """Clone the repository at the event's commit and read its definition text."""
    repo_path = None
    try:
        repo_path = await clone_repository(event.clone_url, event.commit_sha or None, event.branch or None)
        return fetch_pipeline_config(repo_path)
    finally:
        if repo_path:
            cleanup_repo(repo_path)

async def process_event(event: RepositoryEvent, db: AsyncSession) -> Dict[str, Any]:
    """Create and enqueue a pipeline run for `event`, if any job is triggered."""
    if not event.clone_url:
        return {"status": "skipped", "reason": "No repository to clone"}

    if event.kind == EventKind.SCHEDULE and event.cron_tick is None:
        # Pin the tick so the controller matches the same minute
        event = event.model_copy(update={"cron_tick": datetime.now(timezone.utc)})

    try:
        source = await load_definition(event)
        if source is None:
            logger.info(f"No pipeline definition found in {event.repository or event.clone_url}")
            return {"status": "skipped", "reason": "No pipeline configuration found"}
        definition = parse_pipeline_config(source)
    except ParseError as e:
        logger.error(f"Invalid pipeline definition: {e}")
        return {"status": "error", "reason": str(e)}
    except RepositoryError as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}

    candidates = evaluate_triggers(definition, event)
    if not candidates:
        return {"status": "skipped", "reason": f"No jobs triggered by {event.kind.value} event"}
    resolution = resolve(candidates, definition.needs_edges())

    repository = await get_or_create_repository(db, event)
    pipeline_run = PipelineRun(
        repository_id=repository.id,
        pipeline=definition.name,
        event=event.kind.value,
        commit_sha=event.commit_sha,
        branch=event.branch,
        status="queued",
        triggered_by=event.actor,
        config={"source": source, "jobs": resolution.order(), "warnings": definition.warnings},
        event_payload=event.model_dump(mode="json"),
    )
    db.add(pipeline_run)
    await db.flush()

    for name, spec in definition.jobs.items():
        db.add(JobRun(
            run_id=pipeline_run.id,
            name=name,
            environment=spec.environment,
            status="pending" if name in candidates else "skipped",
        ))

    await db.commit()

    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        definition=source,
        event=event.model_dump(mode="json"),
        jobs=sorted(candidates),
    )

    logger.info(f"Pipeline run {pipeline_run.id} created and queued")

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "jobs": resolution.order(),
        "warnings": definition.warnings,
    }
