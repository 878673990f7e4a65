"""
Execution unit schemas - the atomic schedulable entities of a flow.

An ExecutionUnit lives in exactly one phase of one flow. It carries:
- id: Unique within its phase
- blockers: Ids of units in the same phase that must succeed first
- environment: Environment variables for the unit
- extensions: Optional artifact extensions the unit supports

Two closed variants exist, selected by UnitKind:
- CommandUnit (kind=command): an external, shell-level invocation
- ManagedUnit (kind=managed): a named routine invoked in-process
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Optional

from batchflow.errors import InvalidArgumentError, MissingFieldError


class UnitKind(str, Enum):
    """The variant tag of an execution unit."""
    COMMAND = "command"
    MANAGED = "managed"

    @property
    def symbol(self) -> str:
        """The symbol used for this kind in flow documents."""
        return self.value

    @classmethod
    def find(cls, symbol: str) -> Optional["UnitKind"]:
        """Return the kind for a symbol (or legacy alias), or None if unknown."""
        return _KIND_SYMBOLS.get(symbol)

    def __str__(self) -> str:
        return self.value


_KIND_SYMBOLS = {
    "command": UnitKind.COMMAND,
    "managed": UnitKind.MANAGED,
    # legacy documents name managed routines after their old runtime
    "hadoop": UnitKind.MANAGED,
}


def _frozen_mapping(value: Any, name: str) -> Mapping[str, str]:
    if value is None:
        raise InvalidArgumentError(f"{name} must not be None")
    return MappingProxyType({str(k): str(v) for k, v in dict(value).items()})


def check_token(token: str, name: str) -> str:
    """Reject values that cannot be written as one item of a comma-separated list."""
    if not token or token != token.strip() or "," in token:
        raise InvalidArgumentError(f"{name} contains an invalid token: {token!r}")
    return token


def frozen_tokens(value: Any, name: str) -> frozenset[str]:
    if value is None:
        raise InvalidArgumentError(f"{name} must not be None")
    if isinstance(value, str):
        raise InvalidArgumentError(f"{name} must be a collection of strings, not a string")
    return frozenset(check_token(str(v), name) for v in value)


@dataclass(frozen=True)
class ExecutionUnit:
    """
    Base class of the execution unit variants.

    Units are immutable and hashable. Hashing covers identity fields only;
    equality compares every field.

    Attributes:
        id: Unit identifier, unique within its phase
        blockers: Ids of same-phase units this unit waits for
        environment: Environment variables (name -> value)
        extensions: Supported optional artifact extensions
    """
    kind: ClassVar[UnitKind]

    id: str
    blockers: frozenset[str] = field(default_factory=frozenset)
    environment: Mapping[str, str] = field(default_factory=dict, hash=False)
    extensions: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise InvalidArgumentError("id must be a non-empty string")
        blockers = frozen_tokens(self.blockers, "blockers")
        if self.id in blockers:
            raise InvalidArgumentError(f"unit \"{self.id}\" must not block itself")
        object.__setattr__(self, "blockers", blockers)
        object.__setattr__(self, "environment", _frozen_mapping(self.environment, "environment"))
        object.__setattr__(self, "extensions", frozen_tokens(self.extensions, "extensions"))

    def _require(self, name: str) -> None:
        value = getattr(self, name)
        if value is None or (isinstance(value, str) and not value):
            raise MissingFieldError(name, self.id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "id": self.id,
            "kind": self.kind.symbol,
            "blockers": sorted(self.blockers),
            "environment": dict(sorted(self.environment.items())),
            "extensions": sorted(self.extensions),
        }


@dataclass(frozen=True)
class CommandUnit(ExecutionUnit):
    """
    An external command invocation.

    Attributes:
        profile: Name of the execution profile (environment) to run under
        module: Logical module name the command belongs to
        arguments: The literal command line tokens, in order
    """
    kind: ClassVar[UnitKind] = UnitKind.COMMAND

    profile: Optional[str] = None
    module: Optional[str] = None
    arguments: tuple[str, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        self._require("profile")
        self._require("module")
        if self.arguments is None or isinstance(self.arguments, str):
            raise InvalidArgumentError("arguments must be a sequence of strings")
        object.__setattr__(self, "arguments", tuple(str(a) for a in self.arguments))
        if not self.arguments:
            raise MissingFieldError("arguments", self.id)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["profile"] = self.profile
        result["module"] = self.module
        result["arguments"] = list(self.arguments)
        return result


@dataclass(frozen=True)
class ManagedUnit(ExecutionUnit):
    """
    A managed routine invocation.

    Attributes:
        routine_name: Fully qualified name of the handler routine
        properties: Extra properties passed opaquely to the routine
    """
    kind: ClassVar[UnitKind] = UnitKind.MANAGED

    routine_name: Optional[str] = None
    properties: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        super().__post_init__()
        self._require("routine_name")
        object.__setattr__(self, "properties", _frozen_mapping(self.properties, "properties"))

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["routine_name"] = self.routine_name
        result["properties"] = dict(sorted(self.properties.items()))
        return result
