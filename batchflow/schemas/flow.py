"""
Flow schema - one named node of the workflow graph.

A Flow aggregates:
- id: Flow identifier (must not contain '.')
- blocker_ids: Ids of flows that must complete before this flow starts
- enabled_kinds: Unit kinds permitted in this flow
- units_by_phase: For every ExecutionPhase, the units assigned to it

Flows are validated once, at construction, and are immutable afterwards.
Blocker flows are referenced by id only; resolving them is the planner's job.
"""

from collections import Counter
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional

from batchflow.errors import (
    DisallowedKindError,
    DuplicateUnitIdError,
    InvalidArgumentError,
    UnknownBlockerError,
    UnsupportedKindError,
)

from .phase import ExecutionPhase
from .unit import CommandUnit, ExecutionUnit, ManagedUnit, UnitKind, frozen_tokens

_VARIANTS = {
    UnitKind.COMMAND: CommandUnit,
    UnitKind.MANAGED: ManagedUnit,
}


class Flow:
    """
    A validated, immutable flow definition.

    Usage:
        flow = Flow(
            "batch1",
            blocker_ids={"prepare"},
            units_by_phase={ExecutionPhase.MAIN: [unit_a, unit_b]},
            enabled_kinds={UnitKind.COMMAND},
        )

    Raises:
        InvalidArgumentError: If an argument is None or the id contains '.'
        DuplicateUnitIdError: If two units of one phase share an id
        UnsupportedKindError: If a unit is not a known variant
        DisallowedKindError: If a unit kind is not in enabled_kinds
        UnknownBlockerError: If a unit blocker is not declared in its phase
    """

    __slots__ = ("_id", "_blocker_ids", "_units_by_phase", "_enabled_kinds", "_hash")

    def __init__(
        self,
        id: str,
        blocker_ids: Iterable[str],
        units_by_phase: Mapping[ExecutionPhase, Iterable[ExecutionUnit]],
        enabled_kinds: Iterable[UnitKind],
    ):
        if id is None:
            raise InvalidArgumentError("id must not be None")
        if not isinstance(id, str) or not id:
            raise InvalidArgumentError("id must be a non-empty string")
        if "." in id:
            raise InvalidArgumentError(f"id must not contain dot: {id}")
        if units_by_phase is None:
            raise InvalidArgumentError("units_by_phase must not be None")
        if enabled_kinds is None:
            raise InvalidArgumentError("enabled_kinds must not be None")

        blockers = frozen_tokens(blocker_ids, "blocker_ids")
        enables = frozenset(enabled_kinds)
        for kind in enables:
            if not isinstance(kind, UnitKind):
                raise InvalidArgumentError(f"enabled_kinds contains an unknown kind: {kind!r}")

        phases: dict[ExecutionPhase, tuple[ExecutionUnit, ...]] = {}
        for phase, units in units_by_phase.items():
            if not isinstance(phase, ExecutionPhase):
                raise InvalidArgumentError(f"units_by_phase has a non-phase key: {phase!r}")
            if units is None:
                raise InvalidArgumentError(f"units_by_phase[{phase.symbol}] must not be None")
            phases[phase] = tuple(units)

        self._id = id
        self._blocker_ids = blockers
        self._enabled_kinds = enables

        frozen: dict[ExecutionPhase, tuple[ExecutionUnit, ...]] = {}
        for phase in ExecutionPhase:
            units = phases.get(phase, ())
            self._check_duplicates(phase, units)
            for unit in units:
                self._check_kind(unit)
            self._check_blockers(phase, units)
            frozen[phase] = tuple(sorted(units, key=lambda u: u.id))
        self._units_by_phase = MappingProxyType(frozen)
        self._hash: Optional[int] = None

    @classmethod
    def with_all_kinds(
        cls,
        id: str,
        blocker_ids: Iterable[str],
        units_by_phase: Mapping[ExecutionPhase, Iterable[ExecutionUnit]],
    ) -> "Flow":
        """Create a flow that permits every unit kind."""
        return cls(id, blocker_ids, units_by_phase, frozenset(UnitKind))

    def _check_duplicates(self, phase: ExecutionPhase, units: tuple[ExecutionUnit, ...]) -> None:
        counts = Counter(unit.id for unit in units)
        duplicated = sorted(unit_id for unit_id, n in counts.items() if n > 1)
        if duplicated:
            raise DuplicateUnitIdError(self._id, phase.symbol, duplicated)

    def _check_kind(self, unit: ExecutionUnit) -> None:
        kind = getattr(unit, "kind", None)
        variant = _VARIANTS.get(kind) if isinstance(kind, UnitKind) else None
        if variant is None or not isinstance(unit, variant):
            raise UnsupportedKindError(
                f"unsupported unit kind in \"{self._id}\": {kind!r} ({type(unit).__name__})"
            )
        if kind not in self._enabled_kinds:
            raise DisallowedKindError(self._id, unit.id, kind.symbol)

    def _check_blockers(self, phase: ExecutionPhase, units: tuple[ExecutionUnit, ...]) -> None:
        declared = {unit.id for unit in units}
        for unit in units:
            for blocker_id in sorted(unit.blockers - declared):
                raise UnknownBlockerError(self._id, phase.symbol, unit.id, blocker_id)

    @property
    def id(self) -> str:
        return self._id

    @property
    def blocker_ids(self) -> frozenset[str]:
        return self._blocker_ids

    @property
    def enabled_kinds(self) -> frozenset[UnitKind]:
        return self._enabled_kinds

    @property
    def units_by_phase(self) -> Mapping[ExecutionPhase, tuple[ExecutionUnit, ...]]:
        """Units of every phase, sorted by unit id. Empty phases map to ()."""
        return self._units_by_phase

    def units(self, phase: ExecutionPhase) -> tuple[ExecutionUnit, ...]:
        """Get the units of one phase."""
        return self._units_by_phase[phase]

    def find_unit(self, phase: ExecutionPhase, unit_id: str) -> Optional[ExecutionUnit]:
        """Get a unit by phase and id, or None."""
        for unit in self._units_by_phase[phase]:
            if unit.id == unit_id:
                return unit
        return None

    def iter_units(self) -> Iterator[tuple[ExecutionPhase, ExecutionUnit]]:
        """Iterate (phase, unit) pairs in phase order, then unit id order."""
        for phase in ExecutionPhase:
            for unit in self._units_by_phase[phase]:
                yield phase, unit

    @property
    def is_empty(self) -> bool:
        return not any(self._units_by_phase.values())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "id": self._id,
            "blocker_ids": sorted(self._blocker_ids),
            "enabled_kinds": [k.symbol for k in UnitKind if k in self._enabled_kinds],
            "phases": {
                phase.symbol: [unit.to_dict() for unit in units]
                for phase, units in self._units_by_phase.items()
                if units
            },
        }

    def _key(self) -> tuple:
        return (
            self._id,
            self._blocker_ids,
            self._enabled_kinds,
            tuple((phase, frozenset(units)) for phase, units in self._units_by_phase.items()),
        )

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, Flow):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        if self._hash is None:
            object.__setattr__(self, "_hash", hash(self._key()))
        return self._hash

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "_hash"):
            raise AttributeError(f"{type(self).__name__} is immutable")
        object.__setattr__(self, name, value)

    def __repr__(self) -> str:
        counts = {p.symbol: len(u) for p, u in self._units_by_phase.items() if u}
        return (
            f"Flow(id={self._id}, blockers={sorted(self._blocker_ids)}, "
            f"kinds={sorted(k.symbol for k in self._enabled_kinds)}, units={counts})"
        )
