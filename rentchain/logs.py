"""structlog configuration for the rentchain server.

Call configure_logging() once at process startup (run_server.py does).
Modules log through ``structlog.get_logger(__name__)`` with event-style
names and key/value context:

    log.info("tx_submitted", tx_id=record.id, nonce=record.nonce)
"""

import logging
import sys
from typing import Any

import structlog

from rentchain.protocol import LOG_FORMAT, LOG_LEVEL


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Configure structlog and stdlib logging. Idempotent.

    log_format is "json" (one object per line) or "console".
    """
    level_name = (log_level or LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = log_format or LOG_FORMAT

    # uvicorn and other stdlib loggers share the stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, structlog.processors.format_exc_info, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
