"""
Conveyor error taxonomy.
"""

from typing import List, Optional

class ConveyorError(Exception):
    """Base class for all orchestrator errors."""
    pass

class ParseError(ConveyorError):
    """Raised when a pipeline definition is malformed or invalid."""
    pass

class UnknownJobError(ParseError):
    """Raised when a job `needs` a job that does not exist."""
    pass

class DuplicateJobError(ParseError):
    """Raised when two jobs share a name."""
    pass

class CycleError(ParseError):
    """Raised when the job dependency graph contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")

class ConditionEvaluationError(ConveyorError):
    """Raised when a condition cannot be evaluated against the run context."""
    pass

class StepExecutionError(ConveyorError):
    """Raised when a step exits non-zero or cannot be executed."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)

class GateError(ConveyorError):
    """Base class for environment gate errors."""
    pass

class GateRejectedError(GateError):
    """Raised when an environment gate is rejected."""
    pass

class GateTimeoutError(GateError):
    """Raised when an environment gate times out."""
    pass

class GateNotFoundError(GateError):
    """Raised when no gate exists for a run/environment pair."""
    pass

class ArtifactNotFoundError(ConveyorError):
    """Raised when an artifact ID or name cannot be found."""
    pass

class SecretNotFoundError(ConveyorError):
    """Raised when a secret reference cannot be resolved."""
    pass

class RunNotFoundError(ConveyorError):
    """Raised when an operation names a run the orchestrator does not know."""
    pass
