"""
Structured logging setup.

Every module logs through ``structlog.get_logger()`` with an event name first
and the context as keywords, e.g.
``logger.info("preview.session_created", session_id=..., port=...)``.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """
    Configure structlog processors for the process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json: Render one JSON object per line instead of console output
    """
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )
