"""
Structured Logging Configuration

Configures structlog for the enrollment engine. Development output is rendered
for the console, everything else as JSON lines for log aggregation.
"""

import logging
import sys

import structlog
from structlog.types import Processor

from shared.config import Settings


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        settings: Application settings (log_level, log_format, environment)
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "text" or settings.is_development:
        processors: list[Processor] = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=settings.debug),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    # SQL echo is controlled by the engine, not the log level
    for logger_name in ("sqlalchemy", "aiosqlite", "asyncio"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def bind_request_context(**kwargs: object) -> None:
    """Bind request-scoped values (principal, institution) to subsequent log calls."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    """Drop all request-scoped log context."""
    structlog.contextvars.clear_contextvars()
