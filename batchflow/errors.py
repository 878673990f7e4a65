"""
Error classes for batchflow.

Definition errors are raised while a flow is constructed or decoded:
- InvalidArgumentError: Malformed constructor input (programmer error)
- DefinitionError subclasses: Structural problems in a flow definition
  (duplicate unit ids, disallowed kinds, unknown phases/kinds/blockers,
  missing keys or fields)

Graph errors are raised by the planner before anything is dispatched:
- CyclicDependencyError: Units or flows that can never become runnable

Runtime errors are raised by handlers and classified at the engine boundary:
- TransientError: Safe to retry (network hiccups, busy resources)
- PermanentError: Do not retry (bad command, missing routine)
- ExecutionError / UnitTimeoutError: A unit attempt did not succeed

Error handling contract:
- Decoding aborts on the first definition error; no partial flow is returned
- Handlers either return an Outcome or raise; the engine catches at the boundary
- Runtime errors never abort the whole run unless fail-fast is configured
"""

from typing import Iterable, Optional


class BatchflowError(Exception):
    """Base exception for batchflow."""
    pass


class InvalidArgumentError(BatchflowError, ValueError):
    """A constructor or function argument was missing or malformed."""
    pass


class DefinitionError(BatchflowError, ValueError):
    """Base class for invalid flow definitions."""
    pass


class DuplicateUnitIdError(DefinitionError):
    """Two units in the same phase of a flow share an id."""

    def __init__(self, flow_id: str, phase: str, unit_ids: Iterable[str] = ()):
        self.flow_id = flow_id
        self.phase = phase
        self.unit_ids = tuple(unit_ids)
        detail = f": {', '.join(self.unit_ids)}" if self.unit_ids else ""
        super().__init__(f"{flow_id}@{phase} contains duplicated unit ids{detail}")


class DisallowedKindError(DefinitionError):
    """A unit kind is not enabled in the owning flow."""

    def __init__(self, flow_id: str, unit_id: str, kind_symbol: str):
        self.flow_id = flow_id
        self.unit_id = unit_id
        self.kind_symbol = kind_symbol
        super().__init__(
            f"unit kind \"{kind_symbol}\" is not enabled in flow \"{flow_id}\": {unit_id}"
        )


class UnsupportedKindError(DefinitionError):
    """A unit is not one of the supported execution unit variants."""
    pass


class UnknownKindError(DefinitionError):
    """A kind symbol does not match any known unit kind."""

    def __init__(self, key: str, symbol: str):
        self.key = key
        self.symbol = symbol
        super().__init__(f"unknown unit kind in \"{key}\": {symbol}")


class UnknownPhaseError(DefinitionError):
    """A phase symbol does not match any execution phase."""

    def __init__(self, flow_id: str, symbol: str):
        self.flow_id = flow_id
        self.symbol = symbol
        super().__init__(f"unknown phase in \"{flow_id}\": {symbol}")


class MissingKeyError(DefinitionError):
    """A required key is absent from a flow document."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"\"{key}\" is not defined")


class MissingFieldError(DefinitionError):
    """A required execution unit field was not supplied."""

    def __init__(self, field_name: str, unit_id: Optional[str] = None):
        self.field_name = field_name
        self.unit_id = unit_id
        where = f" (unit \"{unit_id}\")" if unit_id else ""
        super().__init__(f"\"{field_name}\" must be specified{where}")


class UnknownBlockerError(DefinitionError):
    """A unit names a blocker that is not declared in the same phase."""

    def __init__(self, flow_id: str, phase: str, unit_id: str, blocker_id: str):
        self.flow_id = flow_id
        self.phase = phase
        self.unit_id = unit_id
        self.blocker_id = blocker_id
        super().__init__(
            f"unit \"{unit_id}\" in {flow_id}@{phase} is blocked by "
            f"undeclared unit \"{blocker_id}\""
        )


class UnknownFlowError(DefinitionError):
    """A flow id is referenced but not defined."""
    pass


class CyclicDependencyError(BatchflowError):
    """
    The dependency graph contains a cycle.

    Raised once, before dispatch, with every node that can never become
    runnable listed in ``members``.
    """

    def __init__(self, message: str, members: Iterable[str] = ()):
        self.members = tuple(members)
        super().__init__(message)


class ConfigError(BatchflowError):
    """Configuration validation error."""
    pass


class TransientError(BatchflowError):
    """
    Transient error - safe to retry.

    Examples:
    - Cluster temporarily unavailable
    - Connection reset
    - Lock held by another batch

    The engine retries units whose handler raises TransientError
    according to the configured retry policy.
    """
    pass


class PermanentError(BatchflowError):
    """
    Permanent error - do not retry.

    Examples:
    - Command not found
    - Routine cannot be imported
    - Invalid unit properties

    The engine fails the unit immediately, without further attempts.
    """
    pass


class ExecutionError(BatchflowError):
    """Raised when a unit attempt fails."""

    def __init__(self, unit_id: str, reason: str):
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"Unit '{unit_id}' failed: {reason}")


class UnitTimeoutError(ExecutionError):
    """Raised when a unit attempt exceeds the configured timeout."""
    pass
