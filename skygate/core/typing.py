"""
Helpers for SQLModel column expressions and timestamps.

Fields on a SQLModel class are typed as plain Python values (`expires_at:
Optional[float]`), but in queries they are column attributes. `col()` tells
the type checker so, letting `col(KeyValueEntry.expires_at) <= now` and
`.is_not(None)` type-check.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """Return attr unchanged, typed as a column attribute."""
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """Timezone-aware now; default_factory for timestamp fields."""
    return datetime.now(timezone.utc)
