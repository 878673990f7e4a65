"""
Routine dispatch - resolving managed units to in-process callables.

A managed unit names its routine in `routine_name`. Names resolve in order:
1. The names registered on the handler's RoutineRegistry
2. "package.module:attribute" (attribute may be dotted)
3. "package.module.attribute" (longest importable module prefix wins)

A routine is called as routine(properties, context). If the resolved object
is a class, it is instantiated without arguments and the instance is called.

Error handling contract:
- Names that cannot be resolved raise PermanentError (retrying won't help)
- Routines raise TransientError or PermanentError themselves; other
  exceptions are treated as ordinary failures by the engine
"""

import importlib
import inspect
from typing import Any, Callable, Optional

from batchflow.errors import PermanentError

# Type alias for routines: (properties, context) -> Outcome | Any
RoutineFn = Callable[[dict[str, str], Any], Any]


class RoutineRegistry:
    """
    Named routines for one handler, with import paths as fallback.

    Usage:
        routines = RoutineRegistry()
        routines.register("cleanup", cleanup)

        @routines.register("archive")
        def archive(properties, context):
            ...

        registry = HandlerRegistry.create_default(config, routines)
    """

    def __init__(self) -> None:
        self._routines: dict[str, RoutineFn] = {}

    def register(self, name: str, fn: Optional[RoutineFn] = None):
        """Register a routine under a name; usable directly or as a decorator."""
        if fn is None:
            def decorator(func: RoutineFn) -> RoutineFn:
                self._routines[name] = func
                return func
            return decorator
        self._routines[name] = fn
        return fn

    def unregister(self, name: str) -> None:
        """Remove a registered routine (no-op if absent)."""
        self._routines.pop(name, None)

    def names(self) -> list[str]:
        return sorted(self._routines)

    def resolve(self, name: str) -> RoutineFn:
        """
        Resolve a routine name to a callable.

        Raises:
            PermanentError: If the name cannot be resolved to a callable
        """
        fn = self._routines.get(name)
        if fn is not None:
            return fn
        return import_routine(name)


def _import_attribute(module_name: str, attribute: str) -> Any:
    target: Any = importlib.import_module(module_name)
    for part in attribute.split("."):
        target = getattr(target, part)
    return target


def _is_module_prefix(missing: Optional[str], module_name: str) -> bool:
    """True if the missing module is module_name or one of its parent packages."""
    if missing is None:
        return False
    return module_name == missing or module_name.startswith(missing + ".")


def _resolve_dotted(name: str) -> Any:
    parts = name.split(".")
    for split in range(len(parts) - 1, 0, -1):
        module_name = ".".join(parts[:split])
        try:
            importlib.import_module(module_name)
        except ModuleNotFoundError as e:
            # only skip when the prefix itself is missing, not one of its imports
            if _is_module_prefix(e.name, module_name):
                continue
            raise
        return _import_attribute(module_name, ".".join(parts[split:]))
    raise PermanentError(f"Cannot resolve routine: {name}")


def import_routine(name: str) -> RoutineFn:
    """
    Resolve an import path to a callable.

    Raises:
        PermanentError: If the name cannot be resolved to a callable
    """
    try:
        if ":" in name:
            module_name, _, attribute = name.partition(":")
            target = _import_attribute(module_name, attribute)
        else:
            target = _resolve_dotted(name)
    except (ImportError, AttributeError, ValueError) as e:
        raise PermanentError(f"Cannot resolve routine: {name} ({e})") from e

    if inspect.isclass(target):
        target = target()
    if not callable(target):
        raise PermanentError(f"Routine is not callable: {name}")
    return target
