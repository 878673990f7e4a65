"""
Codec - flat key/value documents <-> Flow models.

Document layout (one flow):

    flow.<flowId>.blockerIds = <comma-separated flow ids>
    flow.<flowId>.enables = <comma-separated kind symbols>
    flow.<flowId>.<phase>.<0000>.id = <unitId>
    flow.<flowId>.<phase>.<0000>.kind = command | managed
    flow.<flowId>.<phase>.<0000>.blockerIds = <comma-separated unit ids>
    flow.<flowId>.<phase>.<0000>.extensions = <comma-separated tokens>
    flow.<flowId>.<phase>.<0000>.env.<name> = <value>
    # command units
    flow.<flowId>.<phase>.<0000>.profile = <profile>
    flow.<flowId>.<phase>.<0000>.module = <module>
    flow.<flowId>.<phase>.<0000>.command.<0000> = <token>
    # managed units
    flow.<flowId>.<phase>.<0000>.class = <routine name>
    flow.<flowId>.<phase>.<0000>.prop.<name> = <value>

Nesting is recovered from key prefixes alone: the remaining keys of a flow
are partitioned by their first segment into phases, and each phase again into
units. The positional `<0000>` indices are encoding artifacts, not unit ids.

Decoding drains an explicit working set of keys. Required keys that are
missing abort decoding, and so does a stray key at flow or phase level, since
it names a phase or unit of its own. Keys left over inside a unit are
reported as warnings.
"""

import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional

from batchflow import properties as props
from batchflow.errors import (
    InvalidArgumentError,
    MissingKeyError,
    UnknownFlowError,
    UnknownKindError,
    UnknownPhaseError,
    UnsupportedKindError,
)
from batchflow.schemas import (
    CommandUnit,
    ExecutionPhase,
    ExecutionUnit,
    Flow,
    ManagedUnit,
    UnitKind,
)


KEY_FLOW_PREFIX = "flow."
KEY_ID = "id"
KEY_BLOCKERS = "blockerIds"
KEY_KIND = "kind"
KEY_CLASS_NAME = "class"
KEY_PROFILE = "profile"
KEY_MODULE = "module"
KEY_SUPPORTED_EXTENSIONS = "extensions"
KEY_ENABLED_KINDS = "enables"
KEY_ENV_PREFIX = "env."
KEY_COMMAND_PREFIX = "command."
KEY_PROP_PREFIX = "prop."

MAX_INDEX = 9999


def _flow_prefix(flow_id: str) -> str:
    return f"{KEY_FLOW_PREFIX}{flow_id}."


def _phase_prefix(flow_id: str, phase: ExecutionPhase) -> str:
    return f"{_flow_prefix(flow_id)}{phase.symbol}."


def _index(value: int) -> str:
    return f"{value:04d}"


def parse_tokens(text: str) -> list[str]:
    """
    Parse a comma-separated token list.

    Tokens are trimmed, empty tokens dropped, and duplicates removed
    (first occurrence wins). An empty or blank string yields [].
    """
    if text is None:
        raise InvalidArgumentError("text must not be None")
    results: list[str] = []
    for token in text.split(","):
        token = token.strip()
        if token and token not in results:
            results.append(token)
    return results


def join_tokens(tokens: Iterable[str]) -> str:
    """Join tokens into a comma-separated list."""
    return ",".join(tokens)


class _KeySection:
    """
    A working set of keys below some prefix, drained as keys are consumed.

    Keys are stored without the prefix; the prefix is only used to name
    keys fully in error messages and warnings.
    """

    def __init__(self, prefix: str, entries: Mapping[str, str]):
        self.prefix = prefix
        self._entries = dict(sorted(entries.items()))

    def __bool__(self) -> bool:
        return bool(self._entries)

    def take(self, key: str) -> str:
        """Consume a required key."""
        if key not in self._entries:
            raise MissingKeyError(self.prefix + key)
        return self._entries.pop(key)

    def take_optional(self, key: str) -> Optional[str]:
        """Consume a key if present."""
        return self._entries.pop(key, None)

    def take_prefixed(self, prefix: str) -> dict[str, str]:
        """Consume every key under prefix, returning them with prefix removed."""
        matched = [key for key in self._entries if key.startswith(prefix)]
        return {key[len(prefix):]: self._entries.pop(key) for key in matched}

    def partition(self) -> dict[str, "_KeySection"]:
        """
        Drain this section into sub-sections keyed by first segment.

        Repeatedly takes the smallest remaining key, uses its first
        dot-delimited segment as the partition name, and moves that key and
        every key under "<name>." into the partition. A key without a dot
        names a partition of its own; it is kept there under the empty key.
        """
        results: dict[str, _KeySection] = {}
        while self._entries:
            first = next(iter(self._entries))
            name = first.partition(".")[0]
            member_prefix = name + "."
            entries = self.take_prefixed(member_prefix)
            if name in self._entries:
                entries[""] = self._entries.pop(name)
            # the empty key is this section's own value
            results[name] = _KeySection(self.prefix + member_prefix if name else self.prefix, entries)
        return results

    def report_leftovers(self, log: logging.Logger) -> None:
        """Warn about keys that were never consumed."""
        if self._entries:
            log.warning(
                "Ignoring unknown keys: %s",
                ", ".join((self.prefix + key).rstrip(".") for key in self._entries),
            )


def _resolve_kind(symbol: str, key: str) -> UnitKind:
    kind = UnitKind.find(symbol.strip())
    if kind is None:
        raise UnknownKindError(key, symbol)
    return kind


def _decode_enables(section: _KeySection, flow_id: str) -> frozenset[UnitKind]:
    text = section.take_optional(KEY_ENABLED_KINDS)
    if text is None:
        return frozenset(UnitKind)
    key = section.prefix + KEY_ENABLED_KINDS
    return frozenset(_resolve_kind(symbol, key) for symbol in parse_tokens(text))


def _decode_unit(section: _KeySection, log: logging.Logger) -> ExecutionUnit:
    unit_id = section.take(KEY_ID)
    kind_symbol = section.take(KEY_KIND)
    kind = _resolve_kind(kind_symbol, section.prefix + KEY_KIND)
    blockers = parse_tokens(section.take(KEY_BLOCKERS))
    extensions_text = section.take_optional(KEY_SUPPORTED_EXTENSIONS)
    extensions = parse_tokens(extensions_text) if extensions_text is not None else []
    environment = section.take_prefixed(KEY_ENV_PREFIX)

    if kind == UnitKind.COMMAND:
        profile = section.take(KEY_PROFILE)
        module = section.take(KEY_MODULE)
        command = section.take_prefixed(KEY_COMMAND_PREFIX)
        if not command:
            raise MissingKeyError(f"{section.prefix}{KEY_COMMAND_PREFIX}*")
        unit: ExecutionUnit = CommandUnit(
            id=unit_id,
            blockers=frozenset(blockers),
            environment=environment,
            extensions=frozenset(extensions),
            profile=profile,
            module=module,
            arguments=tuple(command[key] for key in sorted(command)),
        )
    elif kind == UnitKind.MANAGED:
        routine_name = section.take(KEY_CLASS_NAME)
        properties = section.take_prefixed(KEY_PROP_PREFIX)
        unit = ManagedUnit(
            id=unit_id,
            blockers=frozenset(blockers),
            environment=environment,
            extensions=frozenset(extensions),
            routine_name=routine_name,
            properties=properties,
        )
    else:
        raise UnsupportedKindError(f"unsupported kind in \"{section.prefix}{KEY_KIND}\": {kind_symbol}")

    section.report_leftovers(log)
    log.debug("Loaded unit %s* -> %s", section.prefix, unit.id)
    return unit


def _decode_units(section: _KeySection, log: logging.Logger) -> list[ExecutionUnit]:
    return [_decode_unit(unit_section, log) for unit_section in section.partition().values()]


def decode_flow(
    properties: Mapping[str, str],
    flow_id: str,
    logger: Optional[logging.Logger] = None,
) -> Flow:
    """
    Decode one flow from a flat document.

    Args:
        properties: The document as a key/value mapping
        flow_id: Id of the flow to decode
        logger: Diagnostics sink for debug output and unknown-key warnings

    Returns:
        The validated Flow

    Raises:
        InvalidArgumentError: If an argument is None
        MissingKeyError: If a required key is absent
        UnknownKindError: If a kind symbol is not recognized
        UnknownPhaseError: If a phase symbol is not recognized
        DefinitionError: If the decoded flow violates a Flow invariant
    """
    log = logger or logging.getLogger(__name__)
    if properties is None:
        raise InvalidArgumentError("properties must not be None")
    if flow_id is None:
        raise InvalidArgumentError("flow_id must not be None")

    prefix = _flow_prefix(flow_id)
    log.debug("Loading execution units: %s*", prefix)
    section = _KeySection(prefix, props.create_prefix_map(properties, prefix))

    blocker_ids = parse_tokens(section.take(KEY_BLOCKERS))
    enables = _decode_enables(section, flow_id)

    units_by_phase: dict[ExecutionPhase, list[ExecutionUnit]] = {}
    count = 0
    for symbol, phase_section in section.partition().items():
        phase = ExecutionPhase.find(symbol)
        if phase is None:
            raise UnknownPhaseError(flow_id, symbol)
        units = _decode_units(phase_section, log)
        units_by_phase[phase] = units
        count += len(units)

    flow = Flow(flow_id, blocker_ids, units_by_phase, enables)
    log.debug("Loaded %d execution units: %s*", count, prefix)
    return flow


def decode_phase(
    properties: Mapping[str, str],
    flow_id: str,
    phase: ExecutionPhase,
    logger: Optional[logging.Logger] = None,
) -> tuple[ExecutionUnit, ...]:
    """
    Decode the units of one phase of one flow.

    The flow-level keys are not validated; the flow must however exist
    in the document. An existing flow without units in the phase yields ().

    Raises:
        UnknownFlowError: If the flow is not defined in the document
        MissingKeyError, UnknownKindError: As for decode_flow
    """
    log = logger or logging.getLogger(__name__)
    if properties is None:
        raise InvalidArgumentError("properties must not be None")
    if flow_id is None:
        raise InvalidArgumentError("flow_id must not be None")
    if phase is None:
        raise InvalidArgumentError("phase must not be None")
    if flow_id not in extract_flow_ids(properties):
        raise UnknownFlowError(f"Flow \"{flow_id}\" does not exist")

    prefix = _phase_prefix(flow_id, phase)
    log.debug("Loading execution units: %s*", prefix)
    section = _KeySection(prefix, props.create_prefix_map(properties, prefix))
    units = _decode_units(section, log)
    log.debug("Loaded %d execution units: %s*", len(units), prefix)
    # reuse the flow invariants (duplicates, blockers) on this phase alone
    checked = Flow.with_all_kinds(flow_id, (), {phase: units})
    return checked.units(phase)


def extract_flow_ids(properties: Mapping[str, str]) -> list[str]:
    """
    Return all flow ids defined in a document, sorted.

    Raises:
        InvalidArgumentError: If properties is None
    """
    if properties is None:
        raise InvalidArgumentError("properties must not be None")
    start = len(KEY_FLOW_PREFIX)
    child_keys = props.get_child_keys(properties, KEY_FLOW_PREFIX, ".")
    return sorted(key[start:] for key in child_keys if len(key) > start)


def decode_flows(
    properties: Mapping[str, str],
    logger: Optional[logging.Logger] = None,
) -> dict[str, Flow]:
    """Decode every flow of a document, keyed by flow id (sorted)."""
    return {
        flow_id: decode_flow(properties, flow_id, logger=logger)
        for flow_id in extract_flow_ids(properties)
    }


def encode_flow(flow: Flow, properties: dict[str, str]) -> None:
    """
    Store a flow into a key/value mapping.

    Units are written per phase in ascending id order with positional
    indices, so the output is deterministic for equal flows.

    Args:
        flow: The flow to encode
        properties: Target mapping, updated in place

    Raises:
        InvalidArgumentError: If an argument is None or an index exceeds 9999
    """
    if flow is None:
        raise InvalidArgumentError("flow must not be None")
    if properties is None:
        raise InvalidArgumentError("properties must not be None")

    flow_prefix = _flow_prefix(flow.id)
    properties[flow_prefix + KEY_BLOCKERS] = join_tokens(sorted(flow.blocker_ids))
    properties[flow_prefix + KEY_ENABLED_KINDS] = join_tokens(
        kind.symbol for kind in UnitKind if kind in flow.enabled_kinds
    )
    for phase, units in flow.units_by_phase.items():
        if len(units) > MAX_INDEX + 1:
            raise InvalidArgumentError(f"too many units in {flow.id}@{phase.symbol}: {len(units)}")
        for index, unit in enumerate(units):
            unit_prefix = f"{_phase_prefix(flow.id, phase)}{_index(index)}."
            properties[unit_prefix + KEY_ID] = unit.id
            properties[unit_prefix + KEY_KIND] = unit.kind.symbol
            properties[unit_prefix + KEY_BLOCKERS] = join_tokens(sorted(unit.blockers))
            properties[unit_prefix + KEY_SUPPORTED_EXTENSIONS] = join_tokens(sorted(unit.extensions))
            for name, value in sorted(unit.environment.items()):
                properties[unit_prefix + KEY_ENV_PREFIX + name] = value

            if isinstance(unit, CommandUnit):
                properties[unit_prefix + KEY_PROFILE] = unit.profile
                properties[unit_prefix + KEY_MODULE] = unit.module
                if len(unit.arguments) > MAX_INDEX + 1:
                    raise InvalidArgumentError(
                        f"too many command tokens in {unit_prefix}: {len(unit.arguments)}"
                    )
                for position, token in enumerate(unit.arguments):
                    properties[f"{unit_prefix}{KEY_COMMAND_PREFIX}{_index(position)}"] = token
            elif isinstance(unit, ManagedUnit):
                properties[unit_prefix + KEY_CLASS_NAME] = unit.routine_name
                for name, value in sorted(unit.properties.items()):
                    properties[unit_prefix + KEY_PROP_PREFIX + name] = value
            else:
                raise UnsupportedKindError(f"unsupported unit kind: {type(unit).__name__}")


def encode_flows(flows: Iterable[Flow]) -> dict[str, str]:
    """Encode several flows into one new mapping."""
    properties: dict[str, str] = {}
    for flow in flows:
        encode_flow(flow, properties)
    return properties


def load_flows(path: Path | str, logger: Optional[logging.Logger] = None) -> dict[str, Flow]:
    """Read a document file and decode every flow in it."""
    return decode_flows(props.read(path), logger=logger)


def dump_flows(flows: Iterable[Flow], path: Path | str, header: Optional[str] = None) -> None:
    """Encode flows and write them as a document file."""
    props.write(path, encode_flows(flows), header=header)
