"""
Error taxonomy and exception reporting for the API resilience layer.

Gate decisions (rate limited, circuit open) are normally reported as typed
results by the orchestrator, not raised. The exception classes exist so that
callers who prefer exceptions can use ApiResult.raise_for_status(), and so the
transport has something specific to raise on network failure.

capture_exception() always logs through structlog and additionally reports to
Sentry once init_sentry() has been called with a DSN.

Usage:
    init_sentry(settings.SENTRY_DSN)

    try:
        response = transport.request("GET", "app.bsky.actor.getProfile")
    except TransportError as exc:
        capture_exception(exc, context={"xrpc_method": "app.bsky.actor.getProfile"})
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from skygate.core.context import get_account_id, get_context_dict, get_cycle_id
from skygate.core.logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "SkygateError",
    "TransportError",
    "RateLimited",
    "CircuitOpen",
    "AuthenticationFailed",
    "init_sentry",
    "is_sentry_enabled",
    "capture_exception",
]

_sentry_initialized: bool = False


class SkygateError(Exception):
    """Base exception for the resilience layer."""

    def __init__(self, message: str, account_id: Optional[str] = None):
        self.account_id = account_id
        super().__init__(message)


class TransportError(SkygateError):
    """Network error or timeout, no response obtained."""

    def __init__(self, message: str, account_id: Optional[str] = None, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, account_id=account_id)


class RateLimited(SkygateError):
    """HTTP 429 observed, or the account is inside a backoff window."""

    def __init__(self, account_id: Optional[str], retry_after: int = 0):
        self.retry_after = retry_after
        super().__init__(
            f"Rate limited for account '{account_id}', retry after {retry_after}s",
            account_id=account_id,
        )


class CircuitOpen(SkygateError):
    """Call suppressed locally because the account's circuit is open."""

    def __init__(self, account_id: Optional[str]):
        super().__init__(f"Circuit open for account '{account_id}'", account_id=account_id)


class AuthenticationFailed(SkygateError):
    """Login call failed or returned a non-success response."""

    pass


def init_sentry(
    dsn: Optional[str],
    environment: str = "production",
    release: Optional[str] = None,
) -> bool:
    """
    Enable Sentry reporting for capture_exception().

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        the SDK rejected the configuration.
    """
    global _sentry_initialized

    if not dsn:
        logger.info("sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            integrations=[
                HttpxIntegration(),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=_before_send,
        )
    except Exception as e:  # sentry_sdk raises BadDsn and friends
        logger.error("failed to initialize sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    tags = event.setdefault("tags", {})
    cycle_id = get_cycle_id()
    if cycle_id:
        tags["cycle_id"] = cycle_id
    account_id = get_account_id()
    if account_id:
        tags["account_id"] = account_id
    return event


def is_sentry_enabled() -> bool:
    return _sentry_initialized


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "warning",
) -> Optional[str]:
    """
    Log an exception with the current cycle/account context and report it to
    Sentry when enabled.

    Returns:
        The Sentry event id, or None if the event was only logged.
    """
    extra = get_context_dict()
    if context:
        extra.update(context)
    extra = {k: v for k, v in extra.items() if v is not None}
    logger.warning(
        "exception captured",
        error_type=type(exc).__name__,
        error=str(exc),
        **extra,
    )

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in extra.items():
                scope.set_extra(key, value)
            if "account_id" in extra:
                scope.set_tag("account_id", extra["account_id"])
            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:  # reporting must never break the caller
        logger.warning("failed to send exception to sentry", error=str(e))
        return None
