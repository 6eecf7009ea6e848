"""structlog configuration.

JSON lines in deployed environments, a readable console renderer for local
runs. Request IDs are merged in from contextvars bound by the middleware.
"""

import logging
import sys

import structlog


def configure_logging(json_output: bool = True, level: int = logging.INFO) -> None:
    """Configure structlog and route stdlib logging through the same output."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Uvicorn and SQLAlchemy log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
