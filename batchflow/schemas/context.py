"""
Execution context - what a handler knows about the attempt it runs.

One context is created per attempt. The cancellation flag is cooperative:
handlers poll `cancelled` (or block on `wait_cancelled`) and stop early.
The engine sets it when the run is cancelled or the attempt times out.
"""

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from .phase import ExecutionPhase


@dataclass(frozen=True)
class ExecutionContext:
    """
    Attributes:
        batch_id: Id of the batch being run
        flow_id: Id of the flow owning the unit
        phase: Phase the unit belongs to
        execution_id: Id of this flow's execution within the run
        arguments: Batch arguments (name -> value)
        attempt: 1-based attempt number
    """
    batch_id: str
    flow_id: str
    phase: ExecutionPhase
    execution_id: str
    arguments: Mapping[str, str] = field(default_factory=dict)
    attempt: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "arguments", MappingProxyType(dict(self.arguments)))
        if self.attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {self.attempt}")

    @property
    def cancelled(self) -> bool:
        """True once the engine asked this attempt to stop."""
        return self.cancel_event.is_set()

    def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout elapses. Returns the cancelled flag."""
        return self.cancel_event.wait(timeout)
