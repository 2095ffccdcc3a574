"""
Environment approval gates.

A gate blocks every job of a run that targets the same deployment
environment until it is approved, rejected, or times out. The first
resolution is final.

    pending -> approved    enough distinct approvers
    pending -> rejected    any single rejection
    pending -> timed-out   no decision within the window
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from controller.src.errors import GateNotFoundError
from controller.src.models.run import utcnow

logger = logging.getLogger(__name__)

class GateState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed-out"

class EnvironmentGate:
    def __init__(
        self,
        run_id: str,
        environment: str,
        required_approvals: int = 1,
        timeout: Optional[float] = None,
    ):
        self.run_id = run_id
        self.environment = environment
        self.required_approvals = max(0, required_approvals)
        self.timeout = timeout
        self.state = GateState.PENDING
        self.approvals: Set[str] = set()
        self.rejected_by: Optional[str] = None
        self.reason: Optional[str] = None
        self.created_at = utcnow()
        self.resolved_at: Optional[datetime] = None
        self._resolved = asyncio.Event()

        if self.required_approvals == 0:
            self._resolve(GateState.APPROVED)

    @property
    def is_resolved(self) -> bool:
        return self.state != GateState.PENDING

    def _resolve(self, state: GateState):
        self.state = state
        self.resolved_at = utcnow()
        self._resolved.set()
        logger.info(f"Gate '{self.environment}' for run {self.run_id} resolved: {state.value}")

    def approve(self, approver: str) -> GateState:
        """Record an approval. Ignored once the gate is resolved."""
        if self.is_resolved:
            logger.info(f"Ignoring approval by {approver} on resolved gate '{self.environment}'")
            return self.state
        self.approvals.add(approver)
        if len(self.approvals) >= self.required_approvals:
            self._resolve(GateState.APPROVED)
        return self.state

    def reject(self, approver: str, reason: Optional[str] = None) -> GateState:
        """A single rejection vetoes the gate."""
        if self.is_resolved:
            logger.info(f"Ignoring rejection by {approver} on resolved gate '{self.environment}'")
            return self.state
        self.rejected_by = approver
        self.reason = reason
        self._resolve(GateState.REJECTED)
        return self.state

    def expire(self) -> GateState:
        if not self.is_resolved:
            self._resolve(GateState.TIMED_OUT)
        return self.state

    def remaining(self) -> Optional[float]:
        if self.timeout is None:
            return None
        elapsed = (utcnow() - self.created_at).total_seconds()
        return max(0.0, self.timeout - elapsed)

    async def wait(self) -> GateState:
        """Wait for a decision; expires the gate when its window elapses."""
        if self.is_resolved:
            return self.state
        try:
            await asyncio.wait_for(self._resolved.wait(), timeout=self.remaining())
        except asyncio.TimeoutError:
            self.expire()
        return self.state

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "state": self.state.value,
            "required_approvals": self.required_approvals,
            "approvals": sorted(self.approvals),
            "rejected_by": self.rejected_by,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

class GateRegistry:
    """Gates keyed by (run, environment); one shared instance per pair."""

    def __init__(self, required_approvals: int = 1, timeout: Optional[float] = None):
        self.default_required_approvals = required_approvals
        self.default_timeout = timeout
        self._gates: Dict[Tuple[str, str], EnvironmentGate] = {}

    def open(
        self,
        run_id: str,
        environment: str,
        required_approvals: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> EnvironmentGate:
        """Return the run's gate for `environment`, creating it on first use."""
        key = (run_id, environment)
        gate = self._gates.get(key)
        if gate is None:
            gate = EnvironmentGate(
                run_id,
                environment,
                required_approvals=self.default_required_approvals if required_approvals is None else required_approvals,
                timeout=self.default_timeout if timeout is None else timeout,
            )
            self._gates[key] = gate
            logger.info(f"Opened gate '{environment}' for run {run_id}")
        return gate

    def get(self, run_id: str, environment: str) -> EnvironmentGate:
        try:
            return self._gates[(run_id, environment)]
        except KeyError:
            raise GateNotFoundError(f"No gate for environment '{environment}' in run {run_id}")

    def approve(self, run_id: str, environment: str, approver: str) -> GateState:
        return self.get(run_id, environment).approve(approver)

    def reject(self, run_id: str, environment: str, approver: str, reason: Optional[str] = None) -> GateState:
        return self.get(run_id, environment).reject(approver, reason)

    def for_run(self, run_id: str) -> List[EnvironmentGate]:
        return [gate for (rid, _), gate in self._gates.items() if rid == run_id]

    def discard_run(self, run_id: str):
        """Destroy a run's gates along with the run."""
        for key in [key for key in self._gates if key[0] == run_id]:
            del self._gates[key]
