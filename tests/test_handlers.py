"""Tests for the handlers module.

Tests cover:
- Handler base class and NoOpHandler
- HandlerRegistry dispatch and factory methods
- CommandHandler (real child processes via the current interpreter)
- CallableHandler and routine resolution
"""

import os
import sys
import threading
import time

import pytest

from batchflow.config import BatchflowConfig
from batchflow.errors import PermanentError, TransientError
from batchflow.handlers import (
    CallableHandler,
    CommandHandler,
    Handler,
    HandlerRegistry,
    NoOpHandler,
)
from batchflow.routines import RoutineRegistry, import_routine
from batchflow.schemas import ExecutionContext, ExecutionPhase, OutcomeStatus, UnitKind

from conftest import command, managed


# -----------------------------------------------------------------------------
# Test Fixtures
# -----------------------------------------------------------------------------


def _context(**kwargs):
    kwargs.setdefault("batch_id", "nightly")
    kwargs.setdefault("flow_id", "f")
    kwargs.setdefault("phase", ExecutionPhase.MAIN)
    kwargs.setdefault("execution_id", "exec-1")
    return ExecutionContext(**kwargs)


def _python(unit_id, code, **kwargs):
    """A command unit running a snippet with the current interpreter."""
    return command(unit_id, arguments=(sys.executable, "-c", code), **kwargs)


class EchoRoutine:
    """Routine class resolved by import path in the tests below."""

    def __call__(self, properties, context):
        if properties.get("fail"):
            raise TransientError(properties["fail"])
        return None


def failing_routine(properties, context):
    from batchflow.schemas import Outcome
    return Outcome.failure(f"refused {context.flow_id}")


@pytest.fixture
def routine_calls():
    """A registry with a recording routine under 'tests.record'."""
    calls = []
    routines = RoutineRegistry()
    routines.register("tests.record", lambda props, ctx: calls.append((props, ctx)))
    return routines, calls


# -----------------------------------------------------------------------------
# Base Handler Tests
# -----------------------------------------------------------------------------


class TestNoOpHandler:
    """Tests for NoOpHandler."""

    def test_is_handler(self):
        """NoOpHandler implements Handler."""
        assert isinstance(NoOpHandler(), Handler)

    def test_returns_success(self):
        """Any unit succeeds without side effects."""
        outcome = NoOpHandler().execute(command("a"), _context())
        assert outcome.status == OutcomeStatus.SUCCESS

    def test_handler_is_abstract(self):
        """Handler cannot be instantiated directly."""
        with pytest.raises(TypeError):
            Handler()


# -----------------------------------------------------------------------------
# HandlerRegistry Tests
# -----------------------------------------------------------------------------


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_get(self):
        """Registered handlers are returned by kind."""
        registry = HandlerRegistry()
        handler = NoOpHandler()
        registry.register(UnitKind.COMMAND, handler)
        assert registry.get(UnitKind.COMMAND) is handler
        assert registry.has(UnitKind.COMMAND)
        assert not registry.has(UnitKind.MANAGED)
        assert registry.list_kinds() == [UnitKind.COMMAND]

    def test_register_by_symbol(self):
        """Kinds may be given by their symbol."""
        registry = HandlerRegistry()
        registry.register("managed", NoOpHandler())
        assert registry.has(UnitKind.MANAGED)

    def test_get_missing(self):
        """Unregistered kinds raise KeyError listing what is registered."""
        registry = HandlerRegistry()
        registry.register(UnitKind.COMMAND, NoOpHandler())
        with pytest.raises(KeyError, match="Registered: \\['command'\\]"):
            registry.get(UnitKind.MANAGED)

    def test_dispatch(self):
        """dispatch routes by the unit's kind."""
        registry = HandlerRegistry.create_noop()
        outcome = registry.dispatch(managed("m"), _context())
        assert outcome.succeeded

    def test_create_noop(self):
        """create_noop covers every kind."""
        registry = HandlerRegistry.create_noop()
        assert all(isinstance(registry.get(kind), NoOpHandler) for kind in UnitKind)

    def test_create_uniform(self):
        """create_uniform shares one handler instance."""
        handler = NoOpHandler()
        registry = HandlerRegistry.create_uniform(handler)
        assert {id(registry.get(kind)) for kind in UnitKind} == {id(handler)}

    def test_create_default(self):
        """create_default wires the real handlers and profile environments."""
        config = BatchflowConfig(profiles={"etl": {"env": {"STAGE": "prod", "N": 3}}})
        registry = HandlerRegistry.create_default(config)
        command_handler = registry.get(UnitKind.COMMAND)
        assert isinstance(command_handler, CommandHandler)
        assert command_handler.profiles == {"etl": {"STAGE": "prod", "N": "3"}}
        assert isinstance(registry.get(UnitKind.MANAGED), CallableHandler)

    def test_create_default_without_config(self):
        """create_default works without configuration."""
        registry = HandlerRegistry.create_default()
        assert registry.get(UnitKind.COMMAND).profiles == {}

    def test_create_default_with_routines(self, routine_calls):
        """create_default hands the routine registry to the managed handler."""
        routines, calls = routine_calls
        registry = HandlerRegistry.create_default(routines=routines)
        assert registry.get(UnitKind.MANAGED).routines is routines
        registry.dispatch(managed("m", routine_name="tests.record"), _context())
        assert len(calls) == 1


# -----------------------------------------------------------------------------
# CommandHandler Tests
# -----------------------------------------------------------------------------


class TestCommandEnvironment:
    """Tests for CommandHandler.build_environment."""

    def test_layers(self, monkeypatch):
        """Process env < profile env < unit env < batchflow variables."""
        monkeypatch.setenv("LAYER", "process")
        monkeypatch.setenv("ONLY_PROCESS", "yes")
        handler = CommandHandler(profiles={"etl": {"LAYER": "profile", "PROFILE_ONLY": "p"}})
        unit = command("a", profile="etl", module="loader", environment={"LAYER": "unit"})
        env = handler.build_environment(unit, _context(arguments={"date": "2024-01-01"}))
        assert env["LAYER"] == "unit"
        assert env["ONLY_PROCESS"] == "yes"
        assert env["PROFILE_ONLY"] == "p"
        assert env["BATCHFLOW_BATCH_ID"] == "nightly"
        assert env["BATCHFLOW_FLOW_ID"] == "f"
        assert env["BATCHFLOW_EXECUTION_ID"] == "exec-1"
        assert env["BATCHFLOW_PHASE"] == "main"
        assert env["BATCHFLOW_MODULE"] == "loader"
        assert env["BATCHFLOW_ARG_DATE"] == "2024-01-01"

    def test_unknown_profile(self):
        """A profile without configuration adds nothing."""
        handler = CommandHandler(profiles={"etl": {"PROFILE_ONLY": "p"}})
        env = handler.build_environment(command("a", profile="other"), _context())
        assert "PROFILE_ONLY" not in env

    def test_does_not_modify_process_env(self):
        """The parent environment is left untouched."""
        CommandHandler().build_environment(command("a", environment={"BF_TEST_X": "1"}), _context())
        assert "BF_TEST_X" not in os.environ


class TestCommandHandler:
    """Tests for running child processes."""

    def test_success(self):
        """Exit code 0 is a success."""
        outcome = CommandHandler().execute(_python("ok", "print('hello')"), _context())
        assert outcome.succeeded

    def test_nonzero_exit(self):
        """A non-zero exit is a failure carrying the last output line."""
        code = "import sys; print('starting'); print('bad thing'); sys.exit(2)"
        outcome = CommandHandler().execute(_python("bad", code), _context())
        assert outcome.status == OutcomeStatus.FAILURE
        assert outcome.reason == "exit code 2: bad thing"

    def test_child_sees_environment(self):
        """The child receives the composed environment."""
        code = (
            "import os, sys; "
            "sys.exit(0 if os.environ['LAYER'] == 'unit' "
            "and os.environ['BATCHFLOW_FLOW_ID'] == 'f' else 3)"
        )
        handler = CommandHandler(profiles={"default": {"LAYER": "profile"}})
        outcome = handler.execute(_python("env", code, environment={"LAYER": "unit"}), _context())
        assert outcome.succeeded

    def test_cwd(self, tmp_path):
        """Children run in the configured working directory."""
        (tmp_path / "marker.txt").write_text("x")
        code = "import os, sys; sys.exit(0 if os.path.exists('marker.txt') else 4)"
        outcome = CommandHandler(cwd=tmp_path).execute(_python("cwd", code), _context())
        assert outcome.succeeded

    def test_command_not_found(self):
        """A missing executable is a permanent error."""
        unit = command("missing", arguments=("batchflow-no-such-binary-xyz",))
        with pytest.raises(PermanentError, match="Command not found"):
            CommandHandler().execute(unit, _context())

    def test_wrong_kind(self):
        """Managed units are rejected."""
        with pytest.raises(PermanentError):
            CommandHandler().execute(managed("m"), _context())

    def test_cancel_terminates_child(self):
        """A cancelled context terminates the child process."""
        context = _context()
        timer = threading.Timer(0.2, context.cancel_event.set)
        timer.start()
        handler = CommandHandler(poll_interval=0.05, terminate_grace=2.0)
        started = time.monotonic()
        try:
            outcome = handler.execute(_python("sleepy", "import time; time.sleep(30)"), context)
        finally:
            timer.cancel()
        assert outcome.status == OutcomeStatus.FAILURE
        assert outcome.reason == "cancelled"
        assert time.monotonic() - started < 10


# -----------------------------------------------------------------------------
# CallableHandler and routine resolution Tests
# -----------------------------------------------------------------------------


class TestRoutines:
    """Tests for routine registration and resolution."""

    def test_register_and_resolve(self, routine_calls):
        """Registered names resolve first."""
        routines, calls = routine_calls
        assert routines.names() == ["tests.record"]
        routines.resolve("tests.record")({"a": "1"}, None)
        assert calls == [({"a": "1"}, None)]

    def test_decorator(self):
        """register works as a decorator."""
        routines = RoutineRegistry()

        @routines.register("tests.decorated")
        def decorated(properties, context):
            return "done"

        assert routines.resolve("tests.decorated") is decorated
        routines.unregister("tests.decorated")
        assert routines.names() == []

    def test_registries_are_independent(self, routine_calls):
        """Names registered on one registry are unknown to another."""
        with pytest.raises(PermanentError, match="Cannot resolve routine"):
            RoutineRegistry().resolve("tests.record")

    def test_registered_name_shadows_import_path(self):
        """A registered name wins over the importable path of the same name."""
        routines = RoutineRegistry()
        routines.register("os.path.basename", failing_routine)
        assert routines.resolve("os.path.basename") is failing_routine

    def test_colon_path(self):
        """module:attribute imports the attribute."""
        assert import_routine("os.path:basename") is os.path.basename

    def test_dotted_path(self):
        """A dotted path uses the longest importable module."""
        assert import_routine("os.path.basename") is os.path.basename

    def test_class_is_instantiated(self):
        """Classes are instantiated and the instance is used."""
        routine = import_routine(f"{__name__}:EchoRoutine")
        assert isinstance(routine, EchoRoutine)

    @pytest.mark.parametrize("name", [
        "batchflow_no_such_module.fn",
        "batchflow_no_such_module:fn",
        "os.path:no_such_function",
        "os.path.no_such_function",
        "nodots",
    ])
    def test_unresolvable(self, name):
        """Names that cannot be resolved raise PermanentError."""
        with pytest.raises(PermanentError, match="Cannot resolve routine"):
            import_routine(name)

    def test_missing_import_inside_routine_module(self, tmp_path, monkeypatch):
        """A module whose own import fails reports that import, even when names share a prefix."""
        (tmp_path / "batchflow_fixture_pkg.py").write_text("import batchflow_fix\n\ndef run(properties, context):\n    pass\n")
        monkeypatch.syspath_prepend(str(tmp_path))
        with pytest.raises(PermanentError, match="No module named 'batchflow_fix'") as exc_info:
            import_routine("batchflow_fixture_pkg.run")
        assert exc_info.value.__cause__.name == "batchflow_fix"

    def test_not_callable(self):
        """Non-callable targets are rejected."""
        with pytest.raises(PermanentError, match="not callable"):
            import_routine("os:sep")


class TestCallableHandler:
    """Tests for CallableHandler."""

    def test_calls_routine(self, routine_calls):
        """The routine receives the unit properties and the context."""
        routines, calls = routine_calls
        context = _context()
        unit = managed("m", routine_name="tests.record", properties={"table": "events"})
        outcome = CallableHandler(routines).execute(unit, context)
        assert outcome.succeeded
        assert calls == [({"table": "events"}, context)]

    def test_outcome_passthrough(self):
        """A returned Outcome is passed through."""
        unit = managed("m", routine_name=f"{__name__}:failing_routine")
        outcome = CallableHandler().execute(unit, _context())
        assert outcome.status == OutcomeStatus.FAILURE
        assert outcome.reason == "refused f"

    def test_routine_errors_propagate(self):
        """Errors raised by the routine reach the engine."""
        unit = managed("m", routine_name=f"{__name__}:EchoRoutine", properties={"fail": "flaky"})
        with pytest.raises(TransientError, match="flaky"):
            CallableHandler().execute(unit, _context())

    def test_unresolvable_routine(self):
        """Unknown routines are permanent errors."""
        unit = managed("m", routine_name="batchflow_no_such_module.fn")
        with pytest.raises(PermanentError):
            CallableHandler().execute(unit, _context())

    def test_wrong_kind(self):
        """Command units are rejected."""
        with pytest.raises(PermanentError):
            CallableHandler().execute(command("c"), _context())
