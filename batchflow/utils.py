"""
Utility functions for batchflow.

Includes logging setup and retries with exponential backoff.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

LOGGER_NAME = "batchflow"


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for batch execution.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        log_file: Optional path to a log file
        console_output: Also log to console (stderr)

    Returns:
        Configured logger
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    if log_format not in ("structured", "pretty"):
        raise ValueError(f"Unknown log format: {log_format}")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler: logging.Handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_time=False
            )
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for name in ("flow_id", "phase", "unit_id", "attempt", "status"):
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    backoff_seconds: float = 60,
    backoff_multiplier: float = 2.0,
    logger: Optional[logging.Logger] = None,
    give_up_on: tuple[type[BaseException], ...] = (),
    wait: Optional[Callable[[float], bool]] = None,
) -> Any:
    """
    Retry a function with exponential backoff.

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        logger: Logger for retry messages
        give_up_on: Exception types that are re-raised without retrying
        wait: Called with the backoff delay instead of time.sleep; returning
              True abandons the remaining attempts (e.g. threading.Event.wait)

    Returns:
        Result of successful function call

    Raises:
        Exception: The last error, if all retries are exhausted or abandoned
    """
    attempt = 1
    wait_time = backoff_seconds

    while True:
        try:
            if logger:
                logger.debug(f"Attempt {attempt}/{max_attempts}")
            return func()

        except give_up_on as e:
            if logger:
                logger.error(f"Attempt {attempt} failed permanently: {e}")
            raise

        except Exception as e:
            if attempt >= max_attempts:
                if logger:
                    logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt} failed: {e}. Retrying in {wait_time}s..."
                )

            if wait is None:
                time.sleep(wait_time)
            elif wait(wait_time):
                if logger:
                    logger.warning(f"Retries abandoned after attempt {attempt}")
                raise

            wait_time *= backoff_multiplier
            attempt += 1
