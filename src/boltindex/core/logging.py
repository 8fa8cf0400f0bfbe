import sys
import logging
from typing import Optional

import structlog
from boltindex.config import settings


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None):
    """
    Configure structlog for the indexer.

    Args:
        level: Overrides settings.LOG_LEVEL (e.g. "DEBUG" from the CLI)
        json_output: Force JSON lines; defaults to APP_ENV == "production"
    """
    log_level = (level or settings.LOG_LEVEL).upper()
    if json_output is None:
        json_output = settings.APP_ENV == "production"

    # stderr keeps stdout free for CLI output (chunk ranges, run summaries)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
        force=True,
    )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """Return a logger bound with the module name"""
    return structlog.get_logger(name)


def bind_run_context(run_id: str, **extra):
    """Attach the pipeline run id (and any extra keys) to every log line in this context."""
    structlog.contextvars.bind_contextvars(run_id=run_id, **extra)


def clear_run_context():
    structlog.contextvars.clear_contextvars()
