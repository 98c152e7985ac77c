"""Structured logging setup for lims-custody-engine.

Every module obtains its logger with ``get_logger(__name__)`` and logs a
human-readable message followed by key/value context:

    logger.info("Custody event recorded", specimen_id=specimen_id, kind="check-in")

``configure_logging`` is called by ``create_app``. Code running without an
app (unit tests, scripts) gets structlog's default console renderer.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ...).
        json_logs: Render JSON lines instead of the developer console format.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.typing.Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

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
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A bound logger accepting key/value context on every call.
    """
    return structlog.get_logger(name)
