"""
Handler Registry for dispatching units to appropriate handlers.

The registry maps unit kinds to their Handler implementations, providing
the single dispatch point the Engine calls.
"""

from typing import TYPE_CHECKING

from batchflow.handlers.base import Handler, NoOpHandler
from batchflow.schemas import ExecutionContext, ExecutionUnit, Outcome, UnitKind

if TYPE_CHECKING:
    from batchflow.config import BatchflowConfig
    from batchflow.routines import RoutineRegistry


class HandlerRegistry:
    """
    Registry for handler dispatch by unit kind.

    Usage:
        registry = HandlerRegistry()
        registry.register(UnitKind.COMMAND, CommandHandler())

        # Dispatch a unit
        outcome = registry.dispatch(unit, context)

        # Or use factory with defaults
        registry = HandlerRegistry.create_default(config)
    """

    def __init__(self) -> None:
        """Initialize an empty handler registry."""
        self._handlers: dict[UnitKind, Handler] = {}

    def register(self, kind: UnitKind, handler: Handler) -> None:
        """
        Register a handler for a unit kind.

        Args:
            kind: Unit kind (command or managed)
            handler: Handler instance for this kind
        """
        self._handlers[UnitKind(kind)] = handler

    def get(self, kind: UnitKind) -> Handler:
        """
        Get handler for a unit kind.

        Raises:
            KeyError: If no handler registered for this kind
        """
        if kind not in self._handlers:
            registered = [k.symbol for k in self._handlers]
            raise KeyError(
                f"No handler registered for kind: {kind}. "
                f"Registered: {registered}"
            )
        return self._handlers[kind]

    def has(self, kind: UnitKind) -> bool:
        """Check if a handler is registered for a unit kind."""
        return kind in self._handlers

    def list_kinds(self) -> list[UnitKind]:
        """List all registered unit kinds."""
        return list(self._handlers.keys())

    def dispatch(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        """
        Dispatch a unit to the handler for its kind.

        Raises:
            KeyError: If no handler registered for the unit's kind
        """
        return self.get(unit.kind).execute(unit, context)

    @classmethod
    def create_uniform(cls, handler: Handler) -> "HandlerRegistry":
        """Create a registry that sends every kind to the same handler."""
        registry = cls()
        for kind in UnitKind:
            registry.register(kind, handler)
        return registry

    @classmethod
    def create_default(
        cls,
        config: "BatchflowConfig | None" = None,
        routines: "RoutineRegistry | None" = None,
    ) -> "HandlerRegistry":
        """
        Create a registry with the default handlers.

        Command units run as subprocesses with the profile environments
        from config; managed units run as in-process routines.

        Args:
            config: Configuration providing profiles (optional)
            routines: Named routines for managed units (optional)

        Returns:
            Configured HandlerRegistry
        """
        from batchflow.handlers.callable_handler import CallableHandler
        from batchflow.handlers.command import CommandHandler

        registry = cls()
        profiles = config.profile_environments() if config is not None else {}
        registry.register(UnitKind.COMMAND, CommandHandler(profiles=profiles))
        registry.register(UnitKind.MANAGED, CallableHandler(routines))
        return registry

    @classmethod
    def create_noop(cls) -> "HandlerRegistry":
        """
        Create a registry with all NoOp handlers.

        Useful for testing and dry-run mode.
        """
        return cls.create_uniform(NoOpHandler())
