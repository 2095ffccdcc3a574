from api.src.models.pipeline import Repository, PipelineRun, JobRun, StepRun
from api.src.models.run import (
    PipelineRunResponse,
    JobResponse,
    StepResponse,
    RepositoryResponse,
    EventRequest,
    GateDecisionRequest,
)

__all__ = [
    "Repository",
    "PipelineRun",
    "JobRun",
    "StepRun",
    "PipelineRunResponse",
    "JobResponse",
    "StepResponse",
    "RepositoryResponse",
    "EventRequest",
    "GateDecisionRequest",
]
