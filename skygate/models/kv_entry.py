"""
Key-value entry persistence model.

Backs DatabaseStore so breaker, rate-limit and session state survive
restarts and are shared between worker processes.
"""

from typing import Any, Optional
from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from skygate.core.typing import utc_now


class KeyValueEntry(SQLModel, table=True):
    """One persisted key with optional expiry."""

    __tablename__ = "kv_entry"

    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(unique=True, index=True)  # e.g. "bluesky_circuit_<account>"
    value: Any = Field(default=None, sa_column=Column(JSON))
    expires_at: Optional[float] = Field(default=None, index=True)  # epoch seconds, None = never
    updated_at: datetime = Field(default_factory=utc_now)
