"""
Logging setup for kcpbridge.

All modules obtain their logger through ``get_logger(__name__)``; the CLI calls
``configure_logging`` once before any role starts. Records go to stderr so
they never mix with anything the process prints on stdout.
"""

import sys
import traceback

from loguru import logger

from kcpbridge.models.enums import LogLevel

_LEVELS = {
    LogLevel.FULL: "DEBUG",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

LOG_FORMAT = "{time:HH:mm:ss.SSS} | {level: <8} | {message}"
FULL_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


def _write_stderr(message: str) -> None:
    # Resolved per record so redirected stderr (tests, daemonizing) is honored
    sys.stderr.write(message)


def get_logger(name: str):
    """Return the shared loguru logger bound to a component name."""
    return logger.bind(name=name)


def configure_logging(level: LogLevel = LogLevel.INFO) -> None:
    """
    Replace all loguru sinks with a single stderr sink.

    Calling this again replaces the previous sink, so the level can be changed
    at runtime.

    Args:
        level: Verbosity level. ``FULL`` additionally records the source
            location and renders extended tracebacks with variable values.
    """
    level = LogLevel(level)
    full = level == LogLevel.FULL

    logger.remove()
    logger.add(
        _write_stderr,
        level=_LEVELS[level],
        format=FULL_LOG_FORMAT if full else LOG_FORMAT,
        backtrace=full,
        diagnose=full,
    )


def format_traceback(exc: BaseException) -> str:
    """Render an exception with its traceback as a single string."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
