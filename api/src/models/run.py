from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID

class StepResponse(BaseModel):
    id: UUID
    job_name: str
    name: str
    status: str
    step_order: int
    logs: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class JobResponse(BaseModel):
    id: UUID
    name: str
    environment: Optional[str] = None
    status: str
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunResponse(BaseModel):
    id: UUID
    pipeline: str
    event: str
    commit_sha: str
    branch: str
    status: str
    triggered_by: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    jobs: List[JobResponse] = []
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True

class EventRequest(BaseModel):
    """A manual dispatch or a scheduler cron tick."""
    repository_url: str
    kind: str = "manual"
    branch: str = "main"
    commit_sha: Optional[str] = None
    actor: str = ""
    inputs: Dict[str, str] = {}
    cron_tick: Optional[datetime] = None

class GateDecisionRequest(BaseModel):
    approver: str
    reason: Optional[str] = None
