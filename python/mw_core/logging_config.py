"""structlog configuration.

Call :func:`configure_logging` once at process start-up. Modules obtain their
logger with ``structlog.get_logger()`` and emit snake_case events with keyword
context.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

LOG_LEVEL = os.environ.get("MW_LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("MW_LOG_FORMAT", "console")  # "json" or "console"


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR). Defaults to MW_LOG_LEVEL.
        json_output: Render JSON lines instead of console output. Defaults to
            MW_LOG_FORMAT == "json".
    """
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    use_json = json_output if json_output is not None else LOG_FORMAT == "json"

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level, force=True)

    renderer: structlog.types.Processor
    if use_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )
