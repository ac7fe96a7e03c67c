"""
Processing-cycle context.

A cycle is one isolated unit of work (one incoming request, one syndication
run). The cycle id and the account currently being served are kept in
contextvars and bound into structlog's context so every log line emitted
during the cycle carries them.

Usage:
    set_cycle_id(generate_cycle_id())
    with account_context(account.id):
        client.get_profile()
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
import uuid

import structlog

__all__ = [
    "generate_cycle_id",
    "set_cycle_id",
    "get_cycle_id",
    "set_account_id",
    "get_account_id",
    "account_context",
    "clear_context",
    "get_context_dict",
]

_cycle_id: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)
_account_id: ContextVar[Optional[str]] = ContextVar("account_id", default=None)


def generate_cycle_id() -> str:
    """
    Generate a new cycle ID.

    Format: cyc_{16 hex chars}
    """
    return f"cyc_{uuid.uuid4().hex[:16]}"


def set_cycle_id(cycle_id: str) -> None:
    _cycle_id.set(cycle_id)
    structlog.contextvars.bind_contextvars(cycle_id=cycle_id)


def get_cycle_id() -> Optional[str]:
    return _cycle_id.get()


def set_account_id(account_id: Optional[str]) -> None:
    _account_id.set(account_id)
    if account_id is None:
        structlog.contextvars.unbind_contextvars("account_id")
    else:
        structlog.contextvars.bind_contextvars(account_id=account_id)


def get_account_id() -> Optional[str]:
    return _account_id.get()


@contextmanager
def account_context(account_id: str) -> Iterator[None]:
    """Bind account_id for the duration of the block, restoring the previous one after."""
    previous = get_account_id()
    set_account_id(account_id)
    try:
        yield
    finally:
        set_account_id(previous)


def clear_context() -> None:
    """Clear all context variables at the end of a cycle."""
    _cycle_id.set(None)
    _account_id.set(None)
    structlog.contextvars.clear_contextvars()


def get_context_dict() -> dict:
    return {
        "cycle_id": get_cycle_id(),
        "account_id": get_account_id(),
    }
