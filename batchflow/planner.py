"""
Planner - builds and validates the two-tier dependency graph.

The planner turns a set of flows into an ExecutionPlan:
- Flow-level edges come from each flow's blocker_ids
- Unit-level edges come from each unit's blockers (same phase only)
- Phase ordering inside a flow is enforced through gate nodes

Gate nodes:
- Gate(flow, phase) opens when the previous phase of the flow is finished
  (or, for the first phase, when every blocker flow is done)
- Gate(flow, None) marks the whole flow as done

Gates make empty phases and empty flows take part in ordering: a flow with
no units still waits for its blockers before its dependents may start.

Validation happens before anything runs:
- Unknown blocker flows raise UnknownFlowError
- Cycles (flow-level or inside a phase) raise one CyclicDependencyError
  naming every member

Ordering is deterministic: whenever several nodes are ready, the one with
the smallest (flow id, phase, unit id) key is emitted first.
"""

import heapq
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Hashable, Iterable, Mapping, NamedTuple, Optional, Union

from batchflow.errors import CyclicDependencyError, InvalidArgumentError, UnknownFlowError
from batchflow.schemas import ExecutionPhase, ExecutionUnit, Flow, UnitRef

_PHASES = tuple(ExecutionPhase)
_DONE_ORDINAL = len(_PHASES)


class Gate(NamedTuple):
    """A virtual node: the start of a flow phase, or (phase=None) flow completion."""
    flow_id: str
    phase: Optional[ExecutionPhase] = None

    @property
    def is_done(self) -> bool:
        return self.phase is None

    def __str__(self) -> str:
        return f"{self.flow_id}@{self.phase.symbol if self.phase else 'done'}"


Node = Union[UnitRef, Gate]


def node_key(node: Node) -> tuple[str, int, int, str]:
    """Sort key shared by units and gates; a phase gate sorts before its units."""
    if isinstance(node, Gate):
        ordinal = _DONE_ORDINAL if node.phase is None else node.phase.ordinal
        return (node.flow_id, ordinal, 0, "")
    return (node.flow_id, node.phase.ordinal, 1, node.unit_id)


@dataclass(frozen=True)
class ExecutionPlan:
    """
    A validated, ordered dependency graph ready for execution.

    Attributes:
        flows: Flows taking part in the run, by id
        units: Every unit of the run, by ref
        prerequisites: For every node, the nodes it waits for
        dependents: For every node, the nodes waiting for it (sorted)
        nodes: Topological order of every node, gates included
        order: Topological order of the unit refs only
    """
    flows: Mapping[str, Flow]
    units: Mapping[UnitRef, ExecutionUnit]
    prerequisites: Mapping[Node, frozenset[Node]]
    dependents: Mapping[Node, tuple[Node, ...]]
    nodes: tuple[Node, ...]
    order: tuple[UnitRef, ...]

    @property
    def flow_order(self) -> tuple[str, ...]:
        """Flow ids in the order their completion gates are reached."""
        return tuple(node.flow_id for node in self.nodes if isinstance(node, Gate) and node.is_done)

    def unit(self, ref: UnitRef) -> ExecutionUnit:
        return self.units[ref]

    def __len__(self) -> int:
        return len(self.order)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "flows": list(self.flow_order),
            "order": [str(ref) for ref in self.order],
            "dependencies": {
                str(ref): sorted(
                    str(dep) for dep in self.prerequisites[ref] if isinstance(dep, UnitRef)
                )
                for ref in self.order
            },
        }


def _strongly_connected(
    nodes: Iterable[Hashable],
    successors: Callable[[Hashable], Iterable[Hashable]],
) -> list[list[Hashable]]:
    """Tarjan's algorithm, iterative."""
    index: dict[Hashable, int] = {}
    lowlink: dict[Hashable, int] = {}
    stack: list[Hashable] = []
    on_stack: set[Hashable] = set()
    components: list[list[Hashable]] = []

    def visit(node: Hashable) -> None:
        index[node] = lowlink[node] = len(index)
        stack.append(node)
        on_stack.add(node)

    for root in nodes:
        if root in index:
            continue
        visit(root)
        work = [(root, iter(successors(root)))]
        while work:
            node, children = work[-1]
            for child in children:
                if child not in index:
                    visit(child)
                    work.append((child, iter(successors(child))))
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index[child])
            else:
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(component)
    return components


def find_cycles(
    nodes: Iterable[Hashable],
    successors: Callable[[Hashable], Iterable[Hashable]],
) -> list[list[Hashable]]:
    """
    Find every cycle in a directed graph.

    Returns the strongly connected components that contain a cycle
    (more than one member, or a node that depends on itself).
    """
    cycles = []
    for component in _strongly_connected(nodes, successors):
        if len(component) > 1 or component[0] in successors(component[0]):
            cycles.append(component)
    return cycles


def _index_flows(flows: Union[Iterable[Flow], Mapping[str, Flow]]) -> dict[str, Flow]:
    if flows is None:
        raise InvalidArgumentError("flows must not be None")
    if isinstance(flows, Mapping):
        flows = flows.values()
    indexed: dict[str, Flow] = {}
    for flow in flows:
        if not isinstance(flow, Flow):
            raise InvalidArgumentError(f"not a Flow: {flow!r}")
        if flow.id in indexed:
            raise InvalidArgumentError(f"flow \"{flow.id}\" is defined more than once")
        indexed[flow.id] = flow
    return indexed


def _select(flows: dict[str, Flow], targets: Optional[Iterable[str]]) -> dict[str, Flow]:
    """Restrict flows to targets and their transitive blocker flows."""
    if targets is None:
        return flows
    if isinstance(targets, str):
        targets = [targets]
    selected: dict[str, Flow] = {}
    pending = list(targets)
    while pending:
        flow_id = pending.pop()
        if flow_id in selected:
            continue
        if flow_id not in flows:
            raise UnknownFlowError(f"Flow \"{flow_id}\" is not defined")
        selected[flow_id] = flows[flow_id]
        pending.extend(flows[flow_id].blocker_ids)
    return selected


def _check_blocker_flows(flows: Mapping[str, Flow]) -> None:
    for flow_id in sorted(flows):
        for blocker_id in sorted(flows[flow_id].blocker_ids):
            if blocker_id not in flows:
                raise UnknownFlowError(
                    f"Flow \"{flow_id}\" is blocked by undefined flow \"{blocker_id}\""
                )


def _check_cycles(flows: Mapping[str, Flow]) -> None:
    flow_cycles = find_cycles(sorted(flows), lambda flow_id: sorted(flows[flow_id].blocker_ids))
    flow_members = sorted(member for cycle in flow_cycles for member in cycle)

    unit_members: list[str] = []
    for flow_id in sorted(flows):
        for phase, units in flows[flow_id].units_by_phase.items():
            blockers = {unit.id: sorted(unit.blockers) for unit in units}
            for cycle in find_cycles(sorted(blockers), blockers.__getitem__):
                unit_members.extend(str(UnitRef(flow_id, phase, unit_id)) for unit_id in cycle)
    unit_members.sort()

    if not flow_members and not unit_members:
        return
    parts = []
    if flow_members:
        parts.append(f"flows [{', '.join(flow_members)}]")
    if unit_members:
        parts.append(f"units [{', '.join(unit_members)}]")
    raise CyclicDependencyError(
        f"Cyclic dependency detected: {'; '.join(parts)}",
        members=flow_members + unit_members,
    )


def _build_graph(
    flows: Mapping[str, Flow],
) -> tuple[dict[UnitRef, ExecutionUnit], dict[Node, set[Node]]]:
    units: dict[UnitRef, ExecutionUnit] = {}
    prerequisites: dict[Node, set[Node]] = {}

    for flow_id, flow in flows.items():
        previous: set[Node] = {Gate(blocker_id) for blocker_id in flow.blocker_ids}
        for phase in _PHASES:
            gate = Gate(flow_id, phase)
            prerequisites[gate] = previous
            previous = {gate}
            for unit in flow.units(phase):
                ref = UnitRef(flow_id, phase, unit.id)
                units[ref] = unit
                prerequisites[ref] = {gate} | {
                    UnitRef(flow_id, phase, blocker_id) for blocker_id in unit.blockers
                }
                previous.add(ref)
        prerequisites[Gate(flow_id)] = previous
    return units, prerequisites


def _topological_order(prerequisites: Mapping[Node, set[Node]]) -> tuple[list[Node], dict[Node, list[Node]]]:
    dependents: dict[Node, list[Node]] = {node: [] for node in prerequisites}
    remaining = {node: len(deps) for node, deps in prerequisites.items()}
    for node, deps in prerequisites.items():
        for dep in deps:
            dependents[dep].append(node)
    for waiting in dependents.values():
        waiting.sort(key=node_key)

    ready = [(node_key(node), node) for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: list[Node] = []
    while ready:
        _, node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (node_key(dependent), dependent))

    if len(order) != len(prerequisites):
        stuck = sorted((node for node, count in remaining.items() if count > 0), key=node_key)
        raise CyclicDependencyError(
            f"Cyclic dependency detected: {', '.join(str(node) for node in stuck)}",
            members=[str(node) for node in stuck],
        )
    return order, dependents


def plan_execution(
    flows: Union[Iterable[Flow], Mapping[str, Flow]],
    targets: Optional[Iterable[str]] = None,
    logger: Optional[logging.Logger] = None,
) -> ExecutionPlan:
    """
    Validate flows and compute a deterministic execution order.

    Args:
        flows: Flows to plan (an iterable, or a mapping of id -> Flow)
        targets: If given, only these flows and their transitive blocker
                 flows are planned
        logger: Diagnostics sink

    Returns:
        ExecutionPlan

    Raises:
        InvalidArgumentError: If flows is None or a flow id appears twice
        UnknownFlowError: If a target or blocker flow is not defined
        CyclicDependencyError: If flows or units depend on each other cyclically
    """
    log = logger or logging.getLogger(__name__)
    selected = _select(_index_flows(flows), targets)
    _check_blocker_flows(selected)
    _check_cycles(selected)

    units, prerequisites = _build_graph(selected)
    nodes, dependents = _topological_order(prerequisites)
    order = tuple(node for node in nodes if isinstance(node, UnitRef))

    plan = ExecutionPlan(
        flows=MappingProxyType(dict(sorted(selected.items()))),
        units=MappingProxyType(units),
        prerequisites=MappingProxyType({node: frozenset(deps) for node, deps in prerequisites.items()}),
        dependents=MappingProxyType({node: tuple(deps) for node, deps in dependents.items()}),
        nodes=tuple(nodes),
        order=order,
    )
    log.debug("Planned %d units in %d flows: %s", len(order), len(selected), ", ".join(plan.flow_order))
    return plan
