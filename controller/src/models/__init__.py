from controller.src.models.definition import (
    EventKind,
    DispatchInput,
    TriggerRule,
    EnvBinding,
    ArtifactInput,
    ArtifactOutput,
    StepKind,
    StepSpec,
    ConcurrencySpec,
    EnvironmentSpec,
    JobSpec,
    PipelineDefinition,
)
from controller.src.models.run import (
    JobState,
    StepState,
    RunStatus,
    RepositoryEvent,
    StepRecord,
    JobExecution,
    Run,
)

__all__ = [
    "EventKind",
    "DispatchInput",
    "TriggerRule",
    "EnvBinding",
    "ArtifactInput",
    "ArtifactOutput",
    "StepKind",
    "StepSpec",
    "ConcurrencySpec",
    "EnvironmentSpec",
    "JobSpec",
    "PipelineDefinition",
    "JobState",
    "StepState",
    "RunStatus",
    "RepositoryEvent",
    "StepRecord",
    "JobExecution",
    "Run",
]
