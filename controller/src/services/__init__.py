from controller.src.errors import (
    ConveyorError,
    ParseError,
    UnknownJobError,
    DuplicateJobError,
    CycleError,
    ConditionEvaluationError,
    StepExecutionError,
    GateError,
    GateRejectedError,
    GateTimeoutError,
    GateNotFoundError,
    ArtifactNotFoundError,
    SecretNotFoundError,
    RunNotFoundError,
)
from controller.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
)
from controller.src.services.triggers import evaluate as evaluate_triggers
from controller.src.services.graph import Resolution, resolve
from controller.src.services.artifacts import ArtifactStore, content_address
from controller.src.services.secrets import (
    SecretStore,
    StaticSecretProvider,
    EnvSecretProvider,
    mask,
)
from controller.src.services.gates import EnvironmentGate, GateRegistry, GateState
from controller.src.services.runners import (
    StepInvocation,
    StepOutcome,
    LocalProcessRunner,
)
from controller.src.services.status_reporter import (
    StatusEvent,
    StatusReporter,
    DatabaseStatusSink,
)
from controller.src.services.executor import JobExecutor
from controller.src.services.scheduler import Orchestrator

__all__ = [
    "ConveyorError",
    "ParseError",
    "UnknownJobError",
    "DuplicateJobError",
    "CycleError",
    "ConditionEvaluationError",
    "StepExecutionError",
    "GateError",
    "GateRejectedError",
    "GateTimeoutError",
    "GateNotFoundError",
    "ArtifactNotFoundError",
    "SecretNotFoundError",
    "RunNotFoundError",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "evaluate_triggers",
    "Resolution",
    "resolve",
    "ArtifactStore",
    "content_address",
    "SecretStore",
    "StaticSecretProvider",
    "EnvSecretProvider",
    "mask",
    "EnvironmentGate",
    "GateRegistry",
    "GateState",
    "StepInvocation",
    "StepOutcome",
    "LocalProcessRunner",
    "StatusEvent",
    "StatusReporter",
    "DatabaseStatusSink",
    "JobExecutor",
    "Orchestrator",
]
