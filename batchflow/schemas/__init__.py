"""
batchflow.schemas - Schema definitions for the workflow graph.

This module defines the core data structures for batchflow:

ExecutionPhase -> ExecutionUnit (CommandUnit | ManagedUnit) -> Flow

Runtime records:
- UnitRef: Batch-wide identity of a unit (flow, phase, unit id)
- Outcome: What a handler reports for one attempt
- ExecutionContext: What a handler knows about the attempt it runs
- UnitResult: Final state of a unit after a run
"""

from .phase import ExecutionPhase
from .unit import (
    UnitKind,
    ExecutionUnit,
    CommandUnit,
    ManagedUnit,
)
from .flow import Flow
from .context import ExecutionContext
from .outcome import (
    UnitRef,
    UnitStatus,
    Outcome,
    OutcomeStatus,
    UnitResult,
)

__all__ = [
    # Phases
    "ExecutionPhase",
    # Units
    "UnitKind",
    "ExecutionUnit",
    "CommandUnit",
    "ManagedUnit",
    # Flow
    "Flow",
    # Runtime
    "ExecutionContext",
    # Outcomes
    "UnitRef",
    "UnitStatus",
    "Outcome",
    "OutcomeStatus",
    "UnitResult",
]
