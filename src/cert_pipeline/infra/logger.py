"""Structured logging for the API and worker processes."""

import logging
import os
import sys
import structlog
from typing import Any

from ..domain.interfaces import Logger


def setup_logging(level: str = "INFO") -> None:
    """Configure structlog on top of the stdlib root logger.

    ``LOG_FORMAT=json`` switches from the console renderer to one JSON
    object per line.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())

    if os.getenv("LOG_FORMAT", "console") == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class StructLogger(Logger):
    """Logger bound to a pipeline component (``cert-api``, ``cert-worker``)."""

    def __init__(self, component: str = "cert-worker", **context: Any):
        """Initialize logger."""
        self.logger = structlog.get_logger(component=component, **context)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        self.logger.info(message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        self.logger.error(message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        self.logger.warning(message, **kwargs)
