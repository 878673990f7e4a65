import logging
import threading

import pytest

from batchflow.handlers import Handler, HandlerRegistry
from batchflow.schemas import (
    CommandUnit,
    ExecutionPhase,
    Flow,
    ManagedUnit,
    Outcome,
)


def command(unit_id, blockers=(), **kwargs):
    """Build a CommandUnit with sensible defaults."""
    kwargs.setdefault("profile", "default")
    kwargs.setdefault("module", "test")
    kwargs.setdefault("arguments", ("run", unit_id))
    return CommandUnit(id=unit_id, blockers=frozenset(blockers), **kwargs)


def managed(unit_id, blockers=(), **kwargs):
    """Build a ManagedUnit with sensible defaults."""
    kwargs.setdefault("routine_name", "tests.routine")
    return ManagedUnit(id=unit_id, blockers=frozenset(blockers), **kwargs)


def flow(flow_id, *units, blockers=(), phase=ExecutionPhase.MAIN, **more_phases):
    """Build a flow with all kinds enabled; units go to `phase` unless more_phases given."""
    units_by_phase = {phase: list(units)} if units else {}
    for symbol, phase_units in more_phases.items():
        units_by_phase[ExecutionPhase(symbol)] = list(phase_units)
    return Flow.with_all_kinds(flow_id, list(blockers), units_by_phase)


class ScriptedHandler(Handler):
    """
    Handler whose outcome per unit id is scripted.

    script maps unit id -> list of Outcomes/exceptions consumed per attempt
    (the last entry repeats). Unscripted units succeed. Every call is
    recorded in `calls` as (flow_id, phase symbol, unit id, attempt).
    """

    def __init__(self, script=None, delay=0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, unit, context):
        with self._lock:
            self.calls.append((context.flow_id, context.phase.symbol, unit.id, context.attempt))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                context.wait_cancelled(self.delay)
            steps = self.script.get(unit.id)
            if not steps:
                return Outcome.success()
            step = steps[0] if len(steps) == 1 else steps.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step
        finally:
            with self._lock:
                self.active -= 1

    def called_ids(self):
        return [call[2] for call in self.calls]


@pytest.fixture
def scripted():
    """Factory: scripted(script, delay) -> (handler, registry)."""
    def factory(script=None, delay=0.0):
        handler = ScriptedHandler(script, delay)
        return handler, HandlerRegistry.create_uniform(handler)
    return factory


@pytest.fixture(autouse=True)
def reset_batchflow_logger():
    """CLI runs install handlers on the batchflow logger; drop them after each test."""
    yield
    logger = logging.getLogger("batchflow")
    logger.handlers = []
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def batchflow_home(tmp_path, monkeypatch):
    """Point BATCHFLOW_HOME at an empty temporary directory."""
    home = tmp_path / "batchflow_home"
    monkeypatch.setenv("BATCHFLOW_HOME", str(home))
    return home


@pytest.fixture
def interrupt_first_wait(monkeypatch):
    """Make the engine's first wait on running units raise KeyboardInterrupt, as Ctrl-C would."""
    from concurrent.futures import wait

    from batchflow import executor

    calls = []

    def interrupted(futures, **kwargs):
        calls.append(len(futures))
        if len(calls) == 1:
            raise KeyboardInterrupt
        return wait(futures, **kwargs)

    monkeypatch.setattr(executor, "wait", interrupted)
    return calls
