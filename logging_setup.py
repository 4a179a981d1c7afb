"""Structured logging with structlog.

JSON output for deployed runs, colorized console output for local work.

Usage:
    import structlog
    logger = structlog.get_logger()
    logger.info("event_name", key="value", count=42)
"""

import logging
import os
import sys

import structlog


def setup_logging(log_level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to ``LOG_LEVEL``.
        json_output: JSON renderer when True, console renderer otherwise.
                     Defaults to ``LOG_JSON`` ("1"/"true").
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
