"""
Run and job execution models.

A Run is one execution of a pipeline definition for one event. Its
JobExecutions are mutated only by the scheduler; everything else reads.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from controller.src.models.definition import EventKind

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class JobState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

TERMINAL_JOB_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.SKIPPED,
    JobState.CANCELLED,
})

class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

class RepositoryEvent(BaseModel):
    """An incoming repository event, as delivered by a webhook or scheduler."""
    kind: EventKind
    branch: str = ""
    changed_paths: Optional[List[str]] = None
    cron_tick: Optional[datetime] = None
    actor: str = ""
    dispatch_inputs: Dict[str, str] = {}
    repository: str = ""
    clone_url: str = ""
    commit_sha: str = ""

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}" if self.branch else ""

class StepRecord(BaseModel):
    name: str
    state: StepState = StepState.PENDING
    exit_code: Optional[int] = None
    error: Optional[str] = None
    log_start: int = 0
    log_end: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class JobExecution(BaseModel):
    name: str
    state: JobState = JobState.PENDING
    required: bool = True
    environment: Optional[str] = None
    step_cursor: int = 0
    steps: List[StepRecord] = []
    logs: List[str] = []
    artifacts: List[str] = []
    error: Optional[str] = None
    annotations: List[str] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    def step_logs(self, index: int) -> List[str]:
        step = self.steps[index]
        return self.logs[step.log_start:step.log_end]

class Run(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pipeline: str
    event: RepositoryEvent
    jobs: Dict[str, JobExecution] = {}
    order: List[str] = []
    status: RunStatus = RunStatus.QUEUED
    cancel_requested: bool = False
    inputs: Dict[str, str] = {}
    artifacts: Dict[str, str] = {}
    warnings: List[str] = []
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return all(job.is_terminal for job in self.jobs.values())

    def job_statuses(self) -> Dict[str, str]:
        return {name: job.state.value for name, job in self.jobs.items()}
