"""
Outcome schemas - tracking unit execution and results.

UnitRef identifies a unit across the whole batch (flow, phase, unit id).
Outcome is what a handler reports for one attempt.
UnitResult records the final state of one unit after a run.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple, Optional

from .phase import ExecutionPhase


class UnitRef(NamedTuple):
    """Batch-wide identity of an execution unit."""
    flow_id: str
    phase: ExecutionPhase
    unit_id: str

    def __str__(self) -> str:
        return f"{self.flow_id}.{self.phase.symbol}.{self.unit_id}"


class UnitStatus(str, Enum):
    """Lifecycle state of a unit within a run."""
    PENDING = "pending"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.SUCCEEDED, UnitStatus.FAILED, UnitStatus.SKIPPED)


class OutcomeStatus(str, Enum):
    """Result of a single handler invocation."""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Outcome:
    """
    The outcome of executing a unit once.

    Handlers return Outcome.success(), Outcome.failure(reason) or
    Outcome.timeout(reason). Failures and timeouts are retried by the engine.
    """
    status: OutcomeStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeStatus.SUCCESS)

    @classmethod
    def failure(cls, reason: str) -> "Outcome":
        return cls(OutcomeStatus.FAILURE, reason)

    @classmethod
    def timeout(cls, reason: str = "timed out") -> "Outcome":
        return cls(OutcomeStatus.TIMEOUT, reason)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


@dataclass(frozen=True)
class UnitResult:
    """
    The final state of one unit after a run.

    Attributes:
        ref: The unit this result belongs to
        status: Final status (succeeded, failed or skipped)
        attempts: Number of handler invocations (0 if never dispatched)
        started_at: When the first attempt started (None if skipped)
        completed_at: When the last attempt completed (None if skipped)
        error: Error details of the last failed attempt
        caused_by: For skipped units, the failed unit that caused the skip
                   (None when skipped by cancellation)
    """
    ref: UnitRef
    status: UnitStatus
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None
    caused_by: Optional[UnitRef] = None

    def __post_init__(self):
        if not self.status.is_terminal:
            raise ValueError(f"UnitResult status must be terminal, got {self.status.value}")
        if self.status in (UnitStatus.SUCCEEDED, UnitStatus.FAILED):
            if self.started_at is None or self.completed_at is None:
                raise ValueError(f"{self.status.value} units must have started_at and completed_at")
        if self.caused_by is not None and self.status != UnitStatus.SKIPPED:
            raise ValueError("Only skipped units may have caused_by")

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "flow_id": self.ref.flow_id,
            "phase": self.ref.phase.symbol,
            "unit_id": self.ref.unit_id,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.error is not None:
            result["error"] = self.error
        if self.caused_by is not None:
            result["caused_by"] = str(self.caused_by)
        return result
