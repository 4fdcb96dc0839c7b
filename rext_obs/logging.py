"""
Structured Logging (structlog).

Scrape failures are data in the exposition, but every one of them is also
logged once with its error kind. Context bound through
`structlog.contextvars` is merged into every event: the request id for the
inbound scrape, and service/resource/metric while a scrape task runs on a
worker.
"""

import logging
import sys

import structlog

from rext_config.settings import Settings


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog for the exporter.

    Output format: JSON (default) or text (dev console).
    Standard library loggers (uvicorn) share the root level.
    """
    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=settings.LOG_LEVEL.upper()
    )
    # per-request httpx lines only at WARNING and above
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.LOG_FORMAT == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get configured logger."""
    return structlog.get_logger(name)
