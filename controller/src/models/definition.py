"""
Pipeline definition models.

A PipelineDefinition is produced by the parser and is read-only afterwards.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, model_validator

from controller.src.dsl.conditions import Condition
from controller.src.dsl.cron import validate_cron

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    RELEASE = "release"

class DispatchInput(BaseModel):
    name: str
    description: str = ""
    required: bool = False
    default: Optional[str] = None

    class Config:
        frozen = True

class TriggerRule(BaseModel):
    event: EventKind
    branches: List[str] = []
    branches_ignore: List[str] = []
    paths: List[str] = []
    paths_ignore: List[str] = []
    cron: Optional[str] = None
    inputs: Dict[str, DispatchInput] = {}

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_cron(self):
        if self.event == EventKind.SCHEDULE:
            if not self.cron:
                raise ValueError("schedule triggers must define a cron expression")
            validate_cron(self.cron)
        elif self.cron is not None:
            raise ValueError(f"'{self.event.value}' triggers cannot define a cron expression")
        return self

class EnvBinding(BaseModel):
    """An environment variable bound to a literal value or a secret name."""
    name: str
    value: Optional[str] = None
    secret: Optional[str] = None

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_source(self):
        if (self.value is None) == (self.secret is None):
            raise ValueError(f"env '{self.name}' must bind exactly one of a value or a secret")
        return self

class ArtifactInput(BaseModel):
    name: str
    path: Optional[str] = None

    class Config:
        frozen = True

class ArtifactOutput(BaseModel):
    name: str
    path: str
    persist: bool = False

    class Config:
        frozen = True

class StepKind(str, Enum):
    RUN = "run"
    USES = "uses"

class StepSpec(BaseModel):
    name: str
    kind: StepKind
    run: Optional[str] = None
    uses: Optional[str] = None
    options: Dict[str, Any] = {}
    env: List[EnvBinding] = []
    inputs: List[ArtifactInput] = []
    outputs: List[ArtifactOutput] = []
    working_directory: Optional[str] = None
    timeout: Optional[int] = None
    continue_on_error: bool = False
    condition: Optional[Condition] = None

    class Config:
        frozen = True
        arbitrary_types_allowed = True

class ConcurrencySpec(BaseModel):
    group: str
    cancel_in_progress: bool = False

    class Config:
        frozen = True

class EnvironmentSpec(BaseModel):
    name: str
    required_approvals: Optional[int] = None
    timeout: Optional[float] = None

    class Config:
        frozen = True

class JobSpec(BaseModel):
    name: str
    steps: List[StepSpec]
    needs: List[str] = []
    condition: Optional[Condition] = None
    environment: Optional[str] = None
    concurrency: Optional[ConcurrencySpec] = None
    events: Optional[List[EventKind]] = None
    continue_on_error: bool = False
    env: List[EnvBinding] = []

    class Config:
        frozen = True
        arbitrary_types_allowed = True

    @property
    def required(self) -> bool:
        """A required job's failure fails the whole run."""
        return not self.continue_on_error

class PipelineDefinition(BaseModel):
    name: str
    triggers: List[TriggerRule]
    jobs: Dict[str, JobSpec]
    environments: Dict[str, EnvironmentSpec] = {}
    env: List[EnvBinding] = []
    warnings: List[str] = []

    class Config:
        frozen = True

    def needs_edges(self) -> Dict[str, List[str]]:
        """Adjacency map of job name -> names it needs, in declaration order."""
        return {name: list(job.needs) for name, job in self.jobs.items()}
