"""
Request-scoped memoization of API responses.

When several consumers in the same processing cycle ask for the same profile
or feed, only the first one reaches the network. The cache has no TTL and no
eviction: it is owned by the orchestrator and flushed at the start of every
cycle.
"""

import hashlib
import json
import threading
from typing import Any, Mapping, Optional


class _Missing:
    """Sentinel for "never set", distinct from a stored None."""

    _instance: Optional["_Missing"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def digest(method: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """sha256 of method + canonical JSON params, independent of param order."""
    param_str = json.dumps(dict(params or {}), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{method}:{param_str}".encode()).hexdigest()


class RequestCache:
    def __init__(self, prefix: str = "bluesky_"):
        self._entries: dict[str, Any] = {}
        self._prefix = prefix
        self._lock = threading.Lock()

    def build_key(self, method: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Deterministic key for method + params, independent of param order."""
        return f"{self._prefix}{method}_{digest(method, params)}"

    def get(self, key: str) -> Any:
        """Return the cached value, or MISSING if the key was never set."""
        with self._lock:
            return self._entries.get(key, MISSING)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = value

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
