"""
Structured logging configuration.

All modules log dotted event names with keyword fields through structlog,
rendered as one JSON object per line on stderr.
"""

import logging
import sys
from typing import Any

import structlog

_configured = False


def _stderr_logger_factory(*args: Any) -> structlog.PrintLogger:
    # Resolved per call so redirected stderr (CLI runners, pytest) is honored.
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog for the whole process.

    Args:
        level: Minimum level to emit
    """
    global _configured
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=_stderr_logger_factory,
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str) -> Any:
    """Return a structured logger for a module.

    Args:
        name: Logger name, usually __name__

    Returns:
        A structlog bound logger
    """
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)
