"""
structlog setup for skygate.

Every breaker transition, rate-limit window and login outcome is logged as an
event with account_id (and cycle_id when a cycle is active), so a log search
for one account reconstructs why its calls were or were not attempted.

    SKYGATE_ENV=production   JSON lines on stderr
    otherwise                console renderer (plain under pytest)
    SKYGATE_LOG_LEVEL        minimum level, default INFO

Usage:
    from skygate.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.warning("circuit opened", account_id="abc", failures=3)
"""

import logging
import os
import sys
from typing import Any

import structlog

IS_PRODUCTION = os.getenv("SKYGATE_ENV") == "production"
IS_TEST = "pytest" in sys.modules
LOG_LEVEL = logging.getLevelName(os.getenv("SKYGATE_LOG_LEVEL", "INFO").upper())

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "sqlalchemy.pool")


def _renderer() -> Any:
    if IS_PRODUCTION:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=not IS_TEST)


def configure_logging(level: int | str = LOG_LEVEL) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if IS_PRODUCTION:
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # capture_logs() in tests only sees loggers that were not cached
        cache_logger_on_first_use=not IS_TEST,
    )

    # Third-party libraries log through stdlib logging
    logging.basicConfig(format="%(levelname)s %(name)s %(message)s", stream=sys.stderr, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)


configure_logging()
