"""
Per-account circuit breaker persisted in a KeyValueStore.

Closed is the absence of a state record. Open carries open_until; the first
availability check at or after open_until persists HalfOpen. The failure
counter lives under its own key with a long TTL and is only cleared by a
success.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
import time

from skygate.core.config import settings
from skygate.core.kv_store import AccountState, KeyValueStore
from skygate.core.logging_config import get_logger

logger = get_logger(__name__)

STATE_KIND = "circuit"
FAILURES_KIND = "failures"


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class CircuitBreaker:
    store: KeyValueStore
    failure_threshold: int = field(default_factory=lambda: settings.CIRCUIT_FAILURE_THRESHOLD)
    cooldown_seconds: int = field(default_factory=lambda: settings.CIRCUIT_COOLDOWN_SECONDS)
    state_ttl: int = field(default_factory=lambda: settings.CIRCUIT_STATE_TTL)
    failure_ttl: int = field(default_factory=lambda: settings.CIRCUIT_FAILURE_TTL)
    key_prefix: Optional[str] = None
    clock: Callable[[], float] = time.time

    def _account(self, account_id: Optional[str]) -> AccountState:
        return AccountState(self.store, account_id, prefix=self.key_prefix)

    def _read_state(self, state: AccountState) -> tuple[CircuitState, float]:
        """Return (state, open_until). Missing or malformed records read as CLOSED."""
        record = state.get(STATE_KIND)
        if record is None:
            return CircuitState.CLOSED, 0.0
        try:
            status = CircuitState(record["status"])
            open_until = float(record.get("open_until") or 0)
        except (TypeError, KeyError, ValueError, AttributeError):
            logger.warning("malformed circuit state, treating as closed", account_id=state.account_id, record=record)
            return CircuitState.CLOSED, 0.0
        return status, open_until

    def _read_failures(self, state: AccountState) -> int:
        raw = state.get(FAILURES_KIND, 0)
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("malformed failure counter, resetting", account_id=state.account_id, value=raw)
            return 0

    def _write_state(self, state: AccountState, status: CircuitState, open_until: float = 0.0) -> None:
        if status == CircuitState.OPEN:
            # Must outlive open_until so the expiry can be observed as HALF_OPEN
            ttl = self.cooldown_seconds + self.state_ttl
        else:
            ttl = self.state_ttl
        state.set(STATE_KIND, {"status": status.value, "open_until": open_until}, ttl)

    def _open(self, state: AccountState, failures: int) -> None:
        open_until = self.clock() + self.cooldown_seconds
        self._write_state(state, CircuitState.OPEN, open_until)
        logger.warning(
            "circuit opened",
            account_id=state.account_id,
            failures=failures,
            open_until=open_until,
        )

    def _close(self, state: AccountState) -> None:
        state.delete(STATE_KIND)
        state.delete(FAILURES_KIND)

    def is_available(self, account_id: Optional[str]) -> bool:
        """
        Check whether a call to this account may proceed.

        An OPEN circuit whose cooldown has elapsed is moved to HALF_OPEN here,
        on read, and one trial call is allowed.
        """
        state = self._account(account_id)
        status, open_until = self._read_state(state)

        if status == CircuitState.CLOSED:
            return True

        if status == CircuitState.OPEN:
            if self.clock() >= open_until:
                self._write_state(state, CircuitState.HALF_OPEN)
                logger.info("circuit half-open", account_id=state.account_id)
                return True
            return False

        return True  # HALF_OPEN

    def record_failure(self, account_id: Optional[str]) -> None:
        state = self._account(account_id)
        status, _ = self._read_state(state)

        failures = self._read_failures(state) + 1
        state.set(FAILURES_KIND, failures, self.failure_ttl)

        if status == CircuitState.HALF_OPEN:
            logger.warning("trial call failed during recovery", account_id=state.account_id)
            self._open(state, failures)
        elif status == CircuitState.CLOSED and failures >= self.failure_threshold:
            self._open(state, failures)

    def record_success(self, account_id: Optional[str]) -> None:
        state = self._account(account_id)
        status, _ = self._read_state(state)

        if status == CircuitState.HALF_OPEN:
            self._close(state)
            logger.info("circuit closed (recovered)", account_id=state.account_id)
        elif status == CircuitState.OPEN:
            # Calls are gated while OPEN, so this only happens if a caller skipped is_available()
            self._close(state)
            logger.warning("success recorded while open, resetting", account_id=state.account_id)
        else:
            state.delete(FAILURES_KIND)

    def reset(self, account_id: Optional[str]) -> None:
        """Force the account back to CLOSED."""
        state = self._account(account_id)
        self._close(state)
        logger.info("circuit manually reset", account_id=state.account_id)

    def get_status(self, account_id: Optional[str]) -> Dict[str, Any]:
        """Read-only snapshot; never performs the OPEN -> HALF_OPEN transition."""
        state = self._account(account_id)
        status, open_until = self._read_state(state)
        remaining = None
        if status == CircuitState.OPEN:
            remaining = max(0.0, open_until - self.clock())
        return {
            "account_id": state.account_id,
            "state": status.value,
            "failure_count": self._read_failures(state),
            "open_until": open_until if status == CircuitState.OPEN else None,
            "time_until_half_open": remaining,
        }
