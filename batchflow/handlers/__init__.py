"""
Handlers module for batchflow execution backends.

This module provides the handler abstraction layer that enforces clean boundaries:
- the engine decides what runs when (ExecutionPlan -> RunResult)
- handlers decide how one unit runs and report an Outcome

Usage:
    from batchflow.handlers import HandlerRegistry, CommandHandler

    # Create registry with configured handlers
    registry = HandlerRegistry()
    registry.register(UnitKind.COMMAND, CommandHandler(profiles=profiles))

    # Or use factory with defaults
    registry = HandlerRegistry.create_default(config)
"""

from batchflow.handlers.base import Handler, NoOpHandler
from batchflow.handlers.registry import HandlerRegistry
from batchflow.handlers.command import CommandHandler
from batchflow.handlers.callable_handler import CallableHandler

__all__ = [
    "Handler",
    "NoOpHandler",
    "HandlerRegistry",
    "CommandHandler",
    "CallableHandler",
]
