from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import JobRun, PipelineRun, StepRun, Repository
from api.src.models.run import (
    EventRequest,
    GateDecisionRequest,
    PipelineRunResponse,
    RepositoryResponse,
)
from api.src.services.dispatch import process_event, repository_names
from api.src.services.queue import get_run_status, send_control
from controller.src.models.definition import EventKind
from controller.src.models.run import RepositoryEvent

router = APIRouter(prefix="/pipelines", tags=["pipelines"])
settings = get_settings()

TERMINAL_RUN_STATUSES = ("succeeded", "failed", "cancelled")
EVENT_KINDS = (EventKind.MANUAL.value, EventKind.SCHEDULE.value)

async def load_run(db: AsyncSession, run_id: UUID) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.jobs), selectinload(PipelineRun.steps))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return run

@router.post("/events")
async def submit_event(request: EventRequest, db: AsyncSession = Depends(get_db)):
    """Submit a manual dispatch or a scheduler cron tick."""
    if request.kind not in EVENT_KINDS:
        raise HTTPException(status_code=400, detail=f"Event kind must be one of {', '.join(EVENT_KINDS)}")

    _, full_name = repository_names(request.repository_url)
    event = RepositoryEvent(
        kind=EventKind(request.kind),
        branch=request.branch,
        commit_sha=request.commit_sha or "",
        actor=request.actor,
        dispatch_inputs=request.inputs,
        cron_tick=request.cron_tick,
        repository=full_name,
        clone_url=request.repository_url,
    )
    return await process_event(event, db)

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.jobs), selectinload(PipelineRun.steps))
        .order_by(PipelineRun.created_at.desc())
    )

    limit = max(1, min(limit, settings.max_page_size))
    if status:
        query = query.where(PipelineRun.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run."""
    return await load_run(db, run_id)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await load_run(db, run_id)

    # Live status from Redis
    redis_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": redis_status,
        "jobs": {job.name: job.status for job in run.jobs},
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get logs for every step of a pipeline run, grouped by job."""
    await load_run(db, run_id)

    query = (
        select(StepRun)
        .where(StepRun.run_id == run_id)
        .order_by(StepRun.job_name, StepRun.step_order)
    )
    result = await db.execute(query)

    jobs = {}
    for step in result.scalars().all():
        jobs.setdefault(step.job_name, []).append({
            "name": step.name,
            "order": step.step_order,
            "status": step.status,
            "logs": step.logs,
            "started_at": step.started_at,
            "finished_at": step.finished_at,
        })

    return {"run_id": str(run_id), "jobs": jobs}

@router.post("/runs/{run_id}/cancel", status_code=202)
async def cancel_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Ask the controller to cancel a run."""
    run = await load_run(db, run_id)
    if run.status in TERMINAL_RUN_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already {run.status}")

    await send_control("cancel", str(run_id), reason="Cancelled by user")
    return {"status": "cancelling", "run_id": str(run_id)}

async def decide_gate(
    db: AsyncSession,
    run_id: UUID,
    environment: str,
    decision: str,
    request: GateDecisionRequest,
):
    run = await load_run(db, run_id)
    if not any(job.environment == environment for job in run.jobs):
        raise HTTPException(status_code=404, detail=f"No job of this run targets environment '{environment}'")
    if run.status in TERMINAL_RUN_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already {run.status}")

    await send_control(
        decision,
        str(run_id),
        environment=environment,
        approver=request.approver,
        reason=request.reason,
    )
    return {"status": "submitted", "decision": decision, "environment": environment}

@router.post("/runs/{run_id}/environments/{environment}/approve", status_code=202)
async def approve_environment(
    run_id: UUID,
    environment: str,
    request: GateDecisionRequest,
    db: AsyncSession = Depends(get_db),
):
    """Approve a run's deployment to an environment."""
    return await decide_gate(db, run_id, environment, "approve", request)

@router.post("/runs/{run_id}/environments/{environment}/reject", status_code=202)
async def reject_environment(
    run_id: UUID,
    environment: str,
    request: GateDecisionRequest,
    db: AsyncSession = Depends(get_db),
):
    """Reject a run's deployment to an environment."""
    return await decide_gate(db, run_id, environment, "reject", request)

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    return result.scalars().all()

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    result = await db.execute(
        select(PipelineRun.status, func.count(PipelineRun.id)).group_by(PipelineRun.status)
    )
    status_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(
        select(JobRun.status, func.count(JobRun.id)).group_by(JobRun.status)
    )
    job_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(select(func.count(Repository.id)))
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "jobs": job_counts,
        "total_runs": sum(status_counts.values()),
    }
