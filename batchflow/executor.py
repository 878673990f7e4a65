"""
Executor - concurrent execution engine for ExecutionPlans.

The Engine implements:
- A per-unit state machine:
    pending -> runnable -> running -> {succeeded, failed}
    pending/runnable -> skipped
- Bounded concurrency on a ThreadPoolExecutor
- Retries with exponential backoff (PermanentError is never retried)
- Per-attempt timeouts, treated like failures
- Skip propagation: every transitive dependent of a failed unit is skipped,
  remembering which failure caused it
- Fail-fast and cooperative cancellation (also on Ctrl-C)

Execution flow:
1. Plan the flows (unless an ExecutionPlan is given)
2. Release every node without prerequisites; gates pass immediately,
   units become runnable
3. Dispatch runnable units while workers are free
4. Wait for the first completion, record it, release or skip dependents
5. Repeat until nothing is running
6. Report a RunResult with the final state of every unit

The coordinator (the thread calling run) owns the graph. Every status
change goes through Engine._transition, a compare-and-set under one lock,
so cancel() may be called from any thread.
"""

import heapq
import logging
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, NamedTuple, Optional, Union

from batchflow.errors import (
    ExecutionError,
    InvalidArgumentError,
    PermanentError,
    UnitTimeoutError,
)
from batchflow.handlers import HandlerRegistry
from batchflow.planner import ExecutionPlan, Gate, Node, node_key, plan_execution
from batchflow.schemas import (
    ExecutionContext,
    ExecutionPhase,
    ExecutionUnit,
    Flow,
    Outcome,
    OutcomeStatus,
    UnitRef,
    UnitResult,
    UnitStatus,
)
from batchflow.utils import retry_with_backoff

if TYPE_CHECKING:
    from batchflow.config import BatchflowConfig


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


_NOT_STARTED = (UnitStatus.PENDING, UnitStatus.RUNNABLE)


class _Attempts(NamedTuple):
    """What a worker reports back for one unit."""
    succeeded: bool
    attempts: int
    error: Optional[dict[str, Any]]


@dataclass(frozen=True)
class RunResult:
    """
    The outcome of one engine run.

    Attributes:
        batch_id: Id of the batch
        results: Final state of every unit, in plan order
        started_at: When the run started
        completed_at: When the run finished
        cancelled: Whether the run was cancelled
    """
    batch_id: str
    results: Mapping[UnitRef, UnitResult]
    started_at: datetime
    completed_at: datetime
    cancelled: bool = False

    def _with_status(self, status: UnitStatus) -> list[UnitResult]:
        return [result for result in self.results.values() if result.status == status]

    @property
    def succeeded(self) -> list[UnitResult]:
        return self._with_status(UnitStatus.SUCCEEDED)

    @property
    def failed(self) -> list[UnitResult]:
        return self._with_status(UnitStatus.FAILED)

    @property
    def skipped(self) -> list[UnitResult]:
        return self._with_status(UnitStatus.SKIPPED)

    @property
    def success(self) -> bool:
        """True if every unit succeeded."""
        return all(result.status == UnitStatus.SUCCEEDED for result in self.results.values())

    def get(self, flow_id: str, phase: Union[ExecutionPhase, str], unit_id: str) -> UnitResult:
        """Look up the result of one unit."""
        return self.results[UnitRef(flow_id, ExecutionPhase(phase), unit_id)]

    def causes(self) -> dict[UnitRef, tuple[UnitRef, ...]]:
        """
        Map every failed unit to the units skipped because of it.

        Units skipped by cancellation have no cause and do not appear.
        """
        chains: dict[UnitRef, list[UnitRef]] = {result.ref: [] for result in self.failed}
        for result in self.skipped:
            if result.caused_by is not None:
                chains.setdefault(result.caused_by, []).append(result.ref)
        return {ref: tuple(skipped) for ref, skipped in chains.items()}

    def raise_for_failures(self) -> None:
        """
        Raise ExecutionError for the first failed unit, if any.

        Raises:
            ExecutionError: If at least one unit failed
        """
        for result in self.failed:
            message = (result.error or {}).get("message", "failed")
            raise ExecutionError(str(result.ref), message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        if self.cancelled:
            status = "cancelled"
        elif self.success:
            status = "succeeded"
        else:
            status = "failed"
        return {
            "batch_id": self.batch_id,
            "status": status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "counts": {
                "succeeded": len(self.succeeded),
                "failed": len(self.failed),
                "skipped": len(self.skipped),
            },
            "units": [result.to_dict() for result in self.results.values()],
            "causes": {
                str(ref): [str(skipped) for skipped in chain]
                for ref, chain in self.causes().items()
            },
        }


class Engine:
    """
    Runs flows with bounded concurrency.

    Usage:
        engine = Engine(HandlerRegistry.create_default(config), max_workers=4)
        result = engine.run(flows)
        for ref, skipped in result.causes().items():
            ...

    Args:
        registry: Handler dispatch by unit kind
        max_workers: Maximum number of units running at once
        max_attempts: Attempts per unit before it is declared failed
        backoff_seconds: Delay before the first retry
        backoff_multiplier: Delay multiplier for each further retry
        timeout_seconds: Per-attempt timeout (None for no timeout)
        fail_fast: Stop dispatching after the first failure
        batch_id: Id reported to handlers and in the result
        arguments: Batch arguments passed to handlers
        listener: Called with each UnitResult once the unit is terminal
        logger: Diagnostics sink
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        max_workers: int = 4,
        max_attempts: int = 1,
        backoff_seconds: float = 0.0,
        backoff_multiplier: float = 2.0,
        timeout_seconds: Optional[float] = None,
        fail_fast: bool = False,
        batch_id: str = "batch",
        arguments: Optional[Mapping[str, str]] = None,
        listener: Optional[Callable[[UnitResult], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if registry is None:
            raise InvalidArgumentError("registry must not be None")
        if max_workers < 1:
            raise InvalidArgumentError(f"max_workers must be >= 1, got {max_workers}")
        if max_attempts < 1:
            raise InvalidArgumentError(f"max_attempts must be >= 1, got {max_attempts}")
        if backoff_seconds < 0:
            raise InvalidArgumentError(f"backoff_seconds must be >= 0, got {backoff_seconds}")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise InvalidArgumentError(f"timeout_seconds must be > 0, got {timeout_seconds}")

        self.registry = registry
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self.timeout_seconds = timeout_seconds
        self.fail_fast = fail_fast
        self.batch_id = batch_id
        self.arguments = dict(arguments or {})
        self.listener = listener
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._plan: Optional[ExecutionPlan] = None
        self._status: dict[Node, UnitStatus] = {}
        self._remaining: dict[Node, int] = {}
        self._ready: list[tuple[tuple, UnitRef]] = []
        self._caused_by: dict[Node, UnitRef] = {}
        self._attempts: dict[UnitRef, int] = {}
        self._started_at: dict[UnitRef, datetime] = {}
        self._completed_at: dict[UnitRef, datetime] = {}
        self._errors: dict[UnitRef, dict[str, Any]] = {}
        self._contexts: dict[UnitRef, ExecutionContext] = {}
        self._announce: list[UnitRef] = []
        self._stop_cause: Optional[UnitRef] = None

    @classmethod
    def from_config(
        cls,
        config: "BatchflowConfig",
        registry: Optional[HandlerRegistry] = None,
        **overrides: Any,
    ) -> "Engine":
        """
        Create an engine from configuration.

        Keyword overrides with a value of None are ignored, so CLI options
        can be passed through unconditionally.
        """
        kwargs: dict[str, Any] = {
            "max_workers": config.max_workers,
            "max_attempts": config.max_attempts,
            "backoff_seconds": config.backoff_seconds,
            "backoff_multiplier": config.backoff_multiplier,
            "timeout_seconds": config.timeout_seconds,
            "fail_fast": config.fail_fast,
        }
        kwargs.update({key: value for key, value in overrides.items() if value is not None})
        if registry is None:
            registry = HandlerRegistry.create_default(config)
        return cls(registry, **kwargs)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def _transition(
        self,
        node: Node,
        expected: Union[UnitStatus, tuple[UnitStatus, ...]],
        new: UnitStatus,
    ) -> bool:
        """Compare-and-set a node status. Returns False if the node was not in expected."""
        if isinstance(expected, UnitStatus):
            expected = (expected,)
        with self._lock:
            if self._status[node] not in expected:
                return False
            self._status[node] = new
            if new.is_terminal and isinstance(node, UnitRef):
                self._announce.append(node)
            return True

    def _release(self, node: Node) -> None:
        """Pass or enqueue nodes whose prerequisites have all succeeded."""
        work = [node]
        while work:
            current = work.pop()
            if isinstance(current, Gate):
                if self._transition(current, UnitStatus.PENDING, UnitStatus.SUCCEEDED):
                    work.extend(self._satisfy(current))
            elif self._transition(current, UnitStatus.PENDING, UnitStatus.RUNNABLE):
                heapq.heappush(self._ready, (node_key(current), current))

    def _satisfy(self, node: Node) -> list[Node]:
        """Count a succeeded node against its dependents; return those now free."""
        freed = []
        for dependent in self._plan.dependents[node]:
            self._remaining[dependent] -= 1
            if self._remaining[dependent] == 0:
                freed.append(dependent)
        return freed

    def _skip_dependents(self, node: Node, cause: UnitRef) -> None:
        work = [node]
        while work:
            current = work.pop()
            for dependent in self._plan.dependents[current]:
                if self._transition(dependent, _NOT_STARTED, UnitStatus.SKIPPED):
                    self._caused_by[dependent] = cause
                    work.append(dependent)

    def _skip_not_started(self, cause: Optional[UnitRef]) -> None:
        for node in self._plan.nodes:
            if self._transition(node, _NOT_STARTED, UnitStatus.SKIPPED) and cause is not None:
                self._caused_by[node] = cause

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Cancel the run in progress.

        Stops dispatching, marks every unit that has not started as skipped,
        and asks in-flight units to stop through their context. In-flight
        units keep whatever outcome they eventually report.
        """
        with self._lock:
            if self._cancel_event.is_set():
                return
            self._cancel_event.set()
            if self._plan is None:
                return
            self.logger.warning("Cancelling batch %s", self.batch_id)
            self._skip_not_started(cause=None)
            for context in self._contexts.values():
                context.cancel_event.set()

    def run(self, target: Union[ExecutionPlan, Iterable[Flow], Mapping[str, Flow]]) -> RunResult:
        """
        Execute flows (or a prepared plan) to completion.

        A KeyboardInterrupt while waiting on running units cancels the run,
        which then drains and returns normally; a second one propagates.

        Args:
            target: An ExecutionPlan, or flows to plan first

        Returns:
            RunResult with the final state of every unit

        Raises:
            UnknownFlowError, CyclicDependencyError: If planning fails;
                nothing is dispatched in that case
        """
        plan = target if isinstance(target, ExecutionPlan) else plan_execution(target, logger=self.logger)
        self._reset(plan)
        started_at = _utcnow()
        execution_ids = {flow_id: uuid.uuid4().hex for flow_id in plan.flows}
        self.logger.info(
            "Starting batch %s: %d units in %d flows",
            self.batch_id, len(plan.order), len(plan.flows),
        )

        with self._lock:
            for node in plan.nodes:
                if self._remaining[node] == 0:
                    self._release(node)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="batchflow") as pool:
            running: dict[Future, UnitRef] = {}
            while True:
                with self._lock:
                    while self._ready and len(running) < self.max_workers:
                        _, ref = heapq.heappop(self._ready)
                        if not self._transition(ref, UnitStatus.RUNNABLE, UnitStatus.RUNNING):
                            continue
                        self._started_at[ref] = _utcnow()
                        self.logger.debug("Dispatching %s", ref)
                        future = pool.submit(
                            self._execute_unit, ref, plan.units[ref], execution_ids[ref.flow_id]
                        )
                        running[future] = ref
                self._announce_completed()
                if not running:
                    break

                try:
                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    # a second Ctrl-C abandons the drain
                    if self.cancelled:
                        raise
                    self.cancel()
                    continue
                for future in done:
                    self._finish(running.pop(future), future.result())

        self._announce_completed()
        with self._lock:
            results = {ref: self._result(ref) for ref in plan.order}
            cancelled = self._cancel_event.is_set()
        result = RunResult(
            batch_id=self.batch_id,
            results=MappingProxyType(results),
            started_at=started_at,
            completed_at=_utcnow(),
            cancelled=cancelled,
        )
        self.logger.info(
            "Finished batch %s: %d succeeded, %d failed, %d skipped",
            self.batch_id, len(result.succeeded), len(result.failed), len(result.skipped),
        )
        return result

    # -------------------------------------------------------------------------
    # Coordinator internals
    # -------------------------------------------------------------------------

    def _reset(self, plan: ExecutionPlan) -> None:
        with self._lock:
            self._cancel_event.clear()
            self._plan = plan
            self._status = {node: UnitStatus.PENDING for node in plan.nodes}
            self._remaining = {node: len(plan.prerequisites[node]) for node in plan.nodes}
            self._ready = []
            self._caused_by = {}
            self._attempts = {}
            self._started_at = {}
            self._completed_at = {}
            self._errors = {}
            self._contexts = {}
            self._announce = []
            self._stop_cause = None

    def _finish(self, ref: UnitRef, report: _Attempts) -> None:
        with self._lock:
            self._attempts[ref] = report.attempts
            self._completed_at[ref] = _utcnow()
            extra = {"flow_id": ref.flow_id, "phase": ref.phase.symbol, "unit_id": ref.unit_id}
            if report.succeeded:
                self._transition(ref, UnitStatus.RUNNING, UnitStatus.SUCCEEDED)
                self.logger.info("%s succeeded", ref, extra={**extra, "status": "succeeded"})
                for freed in self._satisfy(ref):
                    self._release(freed)
                return

            self._errors[ref] = report.error
            self._transition(ref, UnitStatus.RUNNING, UnitStatus.FAILED)
            self.logger.error(
                "%s failed: %s", ref, (report.error or {}).get("message"),
                extra={**extra, "status": "failed"},
            )
            self._skip_dependents(ref, ref)
            if self.fail_fast and self._stop_cause is None:
                self._stop_cause = ref
                self.logger.warning("Fail-fast: no further units will be dispatched")
                self._skip_not_started(cause=ref)

    def _result(self, ref: UnitRef) -> UnitResult:
        status = self._status[ref]
        return UnitResult(
            ref=ref,
            status=status,
            attempts=self._attempts.get(ref, 0),
            started_at=self._started_at.get(ref),
            completed_at=self._completed_at.get(ref),
            error=self._errors.get(ref),
            caused_by=self._caused_by.get(ref) if status == UnitStatus.SKIPPED else None,
        )

    def _announce_completed(self) -> None:
        with self._lock:
            refs, self._announce = self._announce, []
            results = [self._result(ref) for ref in refs]
        if self.listener is None:
            return
        for result in results:
            self.listener(result)

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def _execute_unit(self, ref: UnitRef, unit: ExecutionUnit, execution_id: str) -> _Attempts:
        """Run one unit with retries. Executed on a worker thread."""
        attempts = 0

        def attempt() -> None:
            nonlocal attempts
            attempts += 1
            context = ExecutionContext(
                batch_id=self.batch_id,
                flow_id=ref.flow_id,
                phase=ref.phase,
                execution_id=execution_id,
                arguments=self.arguments,
                attempt=attempts,
            )
            with self._lock:
                self._contexts[ref] = context
                if self._cancel_event.is_set():
                    context.cancel_event.set()
            try:
                outcome = self._invoke(unit, context)
            finally:
                with self._lock:
                    self._contexts.pop(ref, None)
            if outcome.status == OutcomeStatus.TIMEOUT:
                raise UnitTimeoutError(str(ref), outcome.reason or "timed out")
            if not outcome.succeeded:
                raise ExecutionError(str(ref), outcome.reason or "failed")

        try:
            retry_with_backoff(
                attempt,
                max_attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
                backoff_multiplier=self.backoff_multiplier,
                logger=self.logger,
                give_up_on=(PermanentError,),
                wait=self._cancel_event.wait,
            )
        except Exception as e:
            return _Attempts(False, attempts, {"type": type(e).__name__, "message": str(e)})
        return _Attempts(True, attempts, None)

    def _dispatch(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        if not self.registry.has(unit.kind):
            raise PermanentError(f"No handler registered for kind: {unit.kind}")
        outcome = self.registry.dispatch(unit, context)
        if not isinstance(outcome, Outcome):
            raise PermanentError(
                f"Handler returned {type(outcome).__name__} for {unit.id}, expected Outcome"
            )
        return outcome

    def _invoke(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        """Dispatch one attempt, enforcing the timeout if one is configured."""
        if self.timeout_seconds is None:
            return self._dispatch(unit, context)

        box: dict[str, Any] = {}

        def target() -> None:
            try:
                box["outcome"] = self._dispatch(unit, context)
            except Exception as e:
                box["error"] = e

        thread = threading.Thread(
            target=target,
            name=f"batchflow-{context.flow_id}-{unit.id}-{context.attempt}",
            daemon=True,
        )
        thread.start()
        thread.join(self.timeout_seconds)
        if thread.is_alive():
            # the handler thread is abandoned; it only sees the cancel flag
            context.cancel_event.set()
            self.logger.warning(
                "%s.%s.%s timed out after %ss",
                context.flow_id, context.phase.symbol, unit.id, self.timeout_seconds,
            )
            return Outcome.timeout(f"exceeded {self.timeout_seconds}s")
        if "error" in box:
            raise box["error"]
        return box["outcome"]
