"""
Key-value stores backing per-account resilience state.

Two backends share one contract (get / set with TTL / delete):

- MemoryStore: process-local, cachetools TLRUCache with per-key expiry.
- DatabaseStore: SQLModel table, shared between processes, expiry checked
  lazily on read.

A TTL of None or 0 means "no expiry". Neither backend offers atomic
increment, so counters built on top of them are read-modify-write and can
undercount under concurrent writers.

AccountState namespaces keys per account and keeps a registry of every key it
wrote, so all state for one account can be wiped without a prefix/LIKE delete.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from cachetools import TLRUCache
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from skygate.core.config import settings
from skygate.core.logging_config import get_logger
from skygate.core.typing import col, utc_now
from skygate.models.account import normalize_account_id
from skygate.models.kv_entry import KeyValueEntry

logger = get_logger(__name__)

Clock = Callable[[], float]


class KeyValueStore(ABC):
    """Minimal transient-style store contract."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or default if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value; ttl in seconds, None/0 for no expiry."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""


class MemoryStore(KeyValueStore):
    """
    In-process store with per-key TTL.

    Items are held as (value, expires_at) and TLRUCache evicts them once the
    clock passes expires_at.
    """

    def __init__(self, maxsize: Optional[int] = None, clock: Clock = time.time):
        self._clock = clock
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize or settings.MEMORY_STORE_MAXSIZE,
            ttu=self._time_to_use,
            timer=clock,
        )
        self._lock = threading.Lock()

    @staticmethod
    def _time_to_use(key: str, item: tuple, now: float) -> float:
        return item[1]

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            item = self._cache.get(key)
        if item is None:
            return default
        return item[0]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else math.inf
        with self._lock:
            self._cache[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)


class DatabaseStore(KeyValueStore):
    """
    Store backed by the kv_entry table.

    Persistence failures are logged and reported as "absent" rather than
    raised, so a database outage degrades to "no cached state".
    """

    def __init__(self, engine=None, clock: Clock = time.time):
        if engine is None:
            from skygate.db import engine as default_engine

            engine = default_engine
        self._engine = engine
        self._clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        try:
            with Session(self._engine) as session:
                entry = session.exec(select(KeyValueEntry).where(KeyValueEntry.key == key)).first()
                if entry is None:
                    return default
                if entry.expires_at is not None and entry.expires_at <= self._clock():
                    session.delete(entry)
                    session.commit()
                    return default
                return entry.value
        except SQLAlchemyError as e:
            logger.warning("kv read failed", key=key, error=str(e))
            return default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        try:
            with Session(self._engine) as session:
                entry = session.exec(select(KeyValueEntry).where(KeyValueEntry.key == key)).first()
                if entry:
                    entry.value = value
                    entry.expires_at = expires_at
                    entry.updated_at = utc_now()
                else:
                    entry = KeyValueEntry(key=key, value=value, expires_at=expires_at)
                session.add(entry)
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("kv write failed", key=key, error=str(e))

    def delete(self, key: str) -> None:
        try:
            with Session(self._engine) as session:
                entry = session.exec(select(KeyValueEntry).where(KeyValueEntry.key == key)).first()
                if entry:
                    session.delete(entry)
                    session.commit()
        except SQLAlchemyError as e:
            logger.warning("kv delete failed", key=key, error=str(e))

    def purge_expired(self) -> int:
        """Delete every expired row. Returns count of removed rows."""
        now = self._clock()
        try:
            with Session(self._engine) as session:
                expired = session.exec(
                    select(KeyValueEntry).where(
                        col(KeyValueEntry.expires_at).is_not(None),
                        col(KeyValueEntry.expires_at) <= now,
                    )
                ).all()
                for entry in expired:
                    session.delete(entry)
                session.commit()
                return len(expired)
        except SQLAlchemyError as e:
            logger.warning("kv purge failed", error=str(e))
            return 0


def build_store(backend: Optional[str] = None, clock: Clock = time.time) -> KeyValueStore:
    """Create the store selected by STATE_BACKEND."""
    backend = (backend or settings.STATE_BACKEND).lower()
    if backend == "memory":
        return MemoryStore(clock=clock)
    if backend == "database":
        from skygate.db import create_db_and_tables

        create_db_and_tables()
        return DatabaseStore(clock=clock)
    raise ValueError(f"Unknown STATE_BACKEND: {backend!r}")


class AccountState:
    """
    Per-account view over a KeyValueStore.

    Keys are "<prefix><kind>_<account_id>", e.g. "bluesky_circuit_abc".
    Every kind written is recorded under "<prefix>keys_<account_id>" so that
    clear() can remove the account's state without enumerating the store.
    """

    REGISTRY_KIND = "keys"

    def __init__(self, store: KeyValueStore, account_id: Optional[str], prefix: Optional[str] = None):
        self.store = store
        self.account_id = normalize_account_id(account_id)
        self.prefix = settings.STATE_KEY_PREFIX if prefix is None else prefix

    def key(self, kind: str) -> str:
        return f"{self.prefix}{kind}_{self.account_id}"

    def get(self, kind: str, default: Any = None) -> Any:
        return self.store.get(self.key(kind), default)

    def set(self, kind: str, value: Any, ttl: Optional[float] = None) -> None:
        self.store.set(self.key(kind), value, ttl)
        self._register(kind)

    def delete(self, kind: str) -> None:
        self.store.delete(self.key(kind))

    def registered_kinds(self) -> list[str]:
        kinds = self.store.get(self.key(self.REGISTRY_KIND))
        return list(kinds) if isinstance(kinds, list) else []

    def clear(self) -> int:
        """Delete every key this account has written. Returns count of kinds cleared."""
        kinds = self.registered_kinds()
        for kind in kinds:
            self.store.delete(self.key(kind))
        self.store.delete(self.key(self.REGISTRY_KIND))
        if kinds:
            logger.info("account state cleared", account_id=self.account_id, kinds=kinds)
        return len(kinds)

    def _register(self, kind: str) -> None:
        kinds = self.registered_kinds()
        if kind not in kinds:
            kinds.append(kind)
            self.store.set(self.key(self.REGISTRY_KIND), kinds)
