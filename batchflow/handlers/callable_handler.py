"""
Callable Handler for running managed units as in-process routines.

This handler:
1. Resolves the unit's routine_name through its RoutineRegistry
2. Calls the routine with the unit properties and the execution context
3. Passes a returned Outcome through; any other return value is a success
"""

import logging
from typing import Optional

from batchflow.errors import PermanentError
from batchflow.handlers.base import Handler
from batchflow.routines import RoutineRegistry
from batchflow.schemas import ExecutionContext, ExecutionUnit, ManagedUnit, Outcome

logger = logging.getLogger(__name__)


class CallableHandler(Handler):
    """Handler for managed units.

    Args:
        routines: Named routines to resolve first (default: import paths only)
    """

    def __init__(self, routines: Optional[RoutineRegistry] = None):
        self.routines = routines if routines is not None else RoutineRegistry()

    def execute(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        """
        Execute a managed unit.

        Raises:
            PermanentError: If the unit is not a ManagedUnit or its routine
                            cannot be resolved
            TransientError: Propagated from the routine (safe to retry)
        """
        if not isinstance(unit, ManagedUnit):
            raise PermanentError(f"CallableHandler only handles managed units, got: {unit.kind}")

        routine = self.routines.resolve(unit.routine_name)
        logger.debug("Calling routine %s for unit %s", unit.routine_name, unit.id)
        result = routine(dict(unit.properties), context)
        if isinstance(result, Outcome):
            return result
        return Outcome.success()
