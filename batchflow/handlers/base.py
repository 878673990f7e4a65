"""
Base handler protocol and common implementations.

Handlers are the seam between the engine and whatever actually performs
a unit's work. Each handler serves one unit kind:
- command: external processes (CommandHandler)
- managed: in-process routines (CallableHandler)
"""

import logging
from abc import ABC, abstractmethod

from batchflow.schemas import ExecutionContext, ExecutionUnit, Outcome

logger = logging.getLogger(__name__)


class Handler(ABC):
    """
    Abstract base class for execution handlers.

    Handlers receive an ExecutionUnit and the context of the current
    attempt, perform the work, and report an Outcome.
    """

    @abstractmethod
    def execute(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        """
        Execute a unit once.

        Args:
            unit: The unit to run
            context: Identity and cancellation flag of this attempt

        Returns:
            Outcome.success(), Outcome.failure(reason) or Outcome.timeout(reason)

        Raises:
            TransientError: The attempt failed and may be retried
            PermanentError: The attempt failed and must not be retried
        """
        pass


class NoOpHandler(Handler):
    """
    No-op handler for testing and dry-run mode.

    Succeeds without executing anything.
    """

    def execute(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        """Return success without executing."""
        logger.debug("[noop] %s.%s.%s", context.flow_id, context.phase.symbol, unit.id)
        return Outcome.success()
