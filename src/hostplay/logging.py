"""Logging utilities for hostplay.

- Verbosity (-v, -vv, -vvv) to level mapping, with a TRACE level below DEBUG
- Console and optional file logging
- Per-host message prefixing
- Performance timing
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, MutableMapping

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Remote commands are logged at TRACE
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
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
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS[min(max(verbosity, 0), 3)]


def get_level_from_name(level_name: str) -> int:
    """Convert a level name to a logging level.

    Raises:
        ValueError: If the level name is unknown
    """
    try:
        return LEVEL_NAMES[level_name.lower()]
    except KeyError:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}") from None


def configure_logging(
    level: int = logging.WARNING,
    log_file: str | Path | None = None,
    file_level: int | None = None,
    format_string: str | None = None,
) -> None:
    """Configure the root logger for a hostplay run.

    Args:
        level: Console logging level
        log_file: Optional path to also write logs to
        file_level: Level for the log file (defaults to level)
        format_string: Custom console format (chosen from level if None)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/hostplay.log",
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


class HostLoggerAdapter(logging.LoggerAdapter):
    """Prefix every message with the host it concerns.

    Example:
        >>> log = host_logger(logging.getLogger("hostplay.executor"), "web01")
        >>> log.info("Connected")
        INFO [hostplay.executor] [web01] Connected
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['host']}] {msg}", kwargs

    def trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(TRACE, msg, *args, **kwargs)


def host_logger(logger: logging.Logger, host: str) -> HostLoggerAdapter:
    """Wrap a logger so its messages name the given host."""
    return HostLoggerAdapter(logger, {"host": host})


@contextmanager
def log_performance(
    logger: logging.Logger | logging.LoggerAdapter,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time an operation and log its duration.

    Args:
        logger: Logger (or adapter) to use
        operation: Description of the operation being timed
        level: Log level to use
        threshold: Only log if the duration reaches this many seconds
        **context: Extra key=value pairs appended to the message

    Example:
        >>> with log_performance(logger, "Playbook run", hosts=3):
        ...     ...
        INFO: Playbook run completed in 2.104s (hosts=3)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        if threshold is None or duration >= threshold:
            message = f"{operation} completed in {duration:.3f}s"
            if context:
                message += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
            logger.log(level, message)
