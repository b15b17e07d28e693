"""Logging setup and helpers for converge.

Provides:
- a TRACE level below DEBUG used for raw remote commands
- mapping from ``-v`` counts and level names to logging levels
- console + optional file handler configuration
- scope and timing context managers
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,  # raw remote commands
}

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a ``-v`` count (0-3+) to a logging level."""
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Convert a level name (trace, debug, info, ...) to a logging level.

    Raises:
        ValueError: If the level name is invalid
    """
    level = LEVEL_NAMES.get(level_name.lower())
    if level is None:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure the root logger for a converge run.

    Args:
        level: Console logging level
        format_string: Custom console format (chosen from the level if None)
        log_file: Optional path that also receives log records
        file_level: Separate level for the file handler (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/converge.log",
        ...                   file_level=logging.DEBUG)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)

    # asyncssh is chatty at INFO; only surface its problems
    logging.getLogger("asyncssh").setLevel(max(level, logging.WARNING))


def _format_context(context: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items())


@contextmanager
def log_scope(
    logger: logging.Logger,
    message: str,
    level: int = logging.INFO,
    **context: Any,
) -> Generator[None, None, None]:
    """Log entry and exit of a block.

    Example:
        >>> with log_scope(logger, "Gathering facts", hosts=10):
        ...     pass
        INFO: Entering: Gathering facts (hosts=10)
        INFO: Exiting: Gathering facts (hosts=10)
    """
    full_message = f"{message} ({_format_context(context)})" if context else message

    logger.log(level, f"Entering: {full_message}")
    try:
        yield
    finally:
        logger.log(level, f"Exiting: {full_message}")


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time a block and log its duration.

    Args:
        logger: Logger instance to use
        operation: Description of the operation being timed
        level: Log level to use
        threshold: Only log if duration exceeds this threshold (seconds)
        **context: Additional context to include in logs
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        if threshold is None or duration >= threshold:
            full_message = f"{operation} completed in {duration:.3f}s"
            if context:
                full_message += f" ({_format_context(context)})"
            logger.log(level, full_message)

