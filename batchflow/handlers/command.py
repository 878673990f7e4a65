"""
Command Handler for running command units as external processes.

The child environment is built in layers (later wins):
1. The current process environment
2. The environment of the unit's profile (from configuration)
3. The unit's own environment
4. BATCHFLOW_* variables describing the attempt

The child is polled so that a cancelled context terminates it.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Mapping, Optional

from batchflow.errors import PermanentError
from batchflow.handlers.base import Handler
from batchflow.schemas import CommandUnit, ExecutionContext, ExecutionUnit, Outcome

logger = logging.getLogger(__name__)

ENV_BATCH_ID = "BATCHFLOW_BATCH_ID"
ENV_FLOW_ID = "BATCHFLOW_FLOW_ID"
ENV_EXECUTION_ID = "BATCHFLOW_EXECUTION_ID"
ENV_PHASE = "BATCHFLOW_PHASE"
ENV_MODULE = "BATCHFLOW_MODULE"
ENV_ARGUMENT_PREFIX = "BATCHFLOW_ARG_"


class CommandHandler(Handler):
    """
    Handler for command units.

    Args:
        profiles: Profile name -> environment variables
        cwd: Working directory for child processes
        poll_interval: Seconds between cancellation checks
        terminate_grace: Seconds to wait after terminate() before kill()
    """

    def __init__(
        self,
        profiles: Optional[Mapping[str, Mapping[str, str]]] = None,
        cwd: Optional[Path] = None,
        poll_interval: float = 0.1,
        terminate_grace: float = 5.0,
    ):
        self.profiles = {name: dict(env) for name, env in (profiles or {}).items()}
        self.cwd = cwd
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace

    def build_environment(self, unit: CommandUnit, context: ExecutionContext) -> dict[str, str]:
        """Compose the child process environment."""
        env = dict(os.environ)
        if unit.profile in self.profiles:
            env.update(self.profiles[unit.profile])
        else:
            logger.debug("No environment configured for profile %s", unit.profile)
        env.update(unit.environment)
        env[ENV_BATCH_ID] = context.batch_id
        env[ENV_FLOW_ID] = context.flow_id
        env[ENV_EXECUTION_ID] = context.execution_id
        env[ENV_PHASE] = context.phase.symbol
        env[ENV_MODULE] = unit.module
        for name, value in context.arguments.items():
            env[ENV_ARGUMENT_PREFIX + name.upper()] = value
        return env

    def execute(self, unit: ExecutionUnit, context: ExecutionContext) -> Outcome:
        """
        Run the unit's command line and wait for it.

        Returns:
            success on exit code 0, failure otherwise (or when cancelled)

        Raises:
            PermanentError: If the unit is not a CommandUnit or the executable
                            cannot be started
        """
        if not isinstance(unit, CommandUnit):
            raise PermanentError(f"CommandHandler only handles command units, got: {unit.kind}")

        command = list(unit.arguments)
        logger.info("Starting %s: %s", unit.id, " ".join(command))
        try:
            process = subprocess.Popen(
                command,
                env=self.build_environment(unit, context),
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"Command not found: {command[0]}") from e
        except OSError as e:
            raise PermanentError(f"Cannot start {command[0]}: {e}") from e

        chunks: list[str] = []
        while True:
            try:
                output, _ = process.communicate(timeout=self.poll_interval)
                if output:
                    chunks.append(output)
                break
            except subprocess.TimeoutExpired:
                if context.cancelled:
                    self._terminate(process, unit)
                    return Outcome.failure("cancelled")

        output = "".join(chunks)
        for line in output.splitlines():
            logger.debug("[%s] %s", unit.id, line)

        if process.returncode != 0:
            tail = output.strip().splitlines()[-1:] if output.strip() else []
            detail = f": {tail[0]}" if tail else ""
            return Outcome.failure(f"exit code {process.returncode}{detail}")
        return Outcome.success()

    def _terminate(self, process: subprocess.Popen, unit: CommandUnit) -> None:
        logger.warning("Terminating %s (pid %s)", unit.id, process.pid)
        process.terminate()
        try:
            process.communicate(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
