"""
Per-account rate limiter driven by HTTP 429 responses.

The remote API tells us when we've been throttled; this module remembers the
backoff window per account so later cycles fail fast instead of hammering the
server. Retry-After is honoured in both of its forms (delta-seconds and
HTTP-date). Without a usable header the window grows exponentially:

    base = min(60 * 2**attempts, 300), then +/- 20% jitter

Usage:
    limiter = RateLimiter(store)
    if limiter.is_rate_limited(account_id):
        return limiter.get_retry_after(account_id)

    response = transport.request(...)
    if limiter.check_rate_limit(response, account_id):
        ...  # throttled, window recorded
"""

from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional
import math
import random
import time

from skygate.core.config import settings
from skygate.core.kv_store import AccountState, KeyValueStore
from skygate.core.logging_config import get_logger

logger = get_logger(__name__)

WINDOW_KIND = "rate_limit"
ATTEMPTS_KIND = "rate_attempts"

TOO_MANY_REQUESTS = 429


def parse_retry_after(value: Optional[str], now: float) -> Optional[float]:
    """
    Parse a Retry-After header into an absolute expiry timestamp.

    Returns None when the header is absent, empty or unparseable, which sends
    the caller down the exponential backoff path.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None

    if value.isascii() and value.isdigit():
        return now + int(value)

    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass
class RateLimiter:
    store: KeyValueStore
    base_delay: int = field(default_factory=lambda: settings.RATE_LIMIT_BASE_DELAY)
    max_delay: int = field(default_factory=lambda: settings.RATE_LIMIT_MAX_DELAY)
    jitter: float = field(default_factory=lambda: settings.RATE_LIMIT_JITTER)
    attempt_ttl: int = field(default_factory=lambda: settings.RATE_LIMIT_ATTEMPT_TTL)
    key_prefix: Optional[str] = None
    clock: Callable[[], float] = time.time
    rng: random.Random = field(default_factory=random.Random)

    def _account(self, account_id: Optional[str]) -> AccountState:
        return AccountState(self.store, account_id, prefix=self.key_prefix)

    def _read_expiry(self, state: AccountState) -> Optional[float]:
        window = state.get(WINDOW_KIND)
        if window is None:
            return None
        try:
            return float(window["expires_at"])
        except (TypeError, KeyError, ValueError):
            logger.warning("malformed rate limit window, discarding", account_id=state.account_id, window=window)
            state.delete(WINDOW_KIND)
            return None

    def _read_attempts(self, state: AccountState) -> int:
        raw = state.get(ATTEMPTS_KIND, 0)
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            return 0

    def backoff_base(self, attempts: int) -> float:
        """Un-jittered delay for the given number of prior backoff attempts."""
        # Cap the exponent so large counters don't build huge ints
        exponent = min(max(attempts, 0), 32)
        return float(min(self.base_delay * (2**exponent), self.max_delay))

    def backoff_delay(self, attempts: int) -> float:
        base = self.backoff_base(attempts)
        return base * self.rng.uniform(1 - self.jitter, 1 + self.jitter)

    def check_rate_limit(self, response: Any, account_id: Optional[str]) -> bool:
        """
        Inspect a response and record a backoff window if it is a 429.

        Args:
            response: Anything with .status_code and .headers (httpx.Response)
            account_id: Account the response belongs to

        Returns:
            True if the response was a 429 (window recorded), False otherwise
        """
        if getattr(response, "status_code", None) != TOO_MANY_REQUESTS:
            return False

        state = self._account(account_id)
        now = self.clock()
        headers = getattr(response, "headers", None) or {}
        header = headers.get("retry-after")
        expires_at = parse_retry_after(header, now)

        if expires_at is not None:
            ttl = max(expires_at - now, 0)
            state.set(WINDOW_KIND, {"expires_at": expires_at}, ttl)
            # Explicit server timing resets backoff progression
            state.delete(ATTEMPTS_KIND)
            logger.warning(
                "rate limited (retry-after)",
                account_id=state.account_id,
                retry_after=header,
                window_seconds=round(ttl, 1),
            )
            return True

        if header:
            logger.warning("unparseable retry-after, using backoff", account_id=state.account_id, retry_after=header)

        attempts = self._read_attempts(state)
        delay = self.backoff_delay(attempts)
        state.set(WINDOW_KIND, {"expires_at": now + delay}, delay)
        state.set(ATTEMPTS_KIND, attempts + 1, self.attempt_ttl)
        logger.warning(
            "rate limited (backoff)",
            account_id=state.account_id,
            attempt=attempts + 1,
            window_seconds=round(delay, 1),
        )
        return True

    def is_rate_limited(self, account_id: Optional[str]) -> bool:
        state = self._account(account_id)
        expires_at = self._read_expiry(state)
        if expires_at is None:
            return False

        if expires_at > self.clock():
            return True

        state.delete(WINDOW_KIND)
        state.delete(ATTEMPTS_KIND)
        logger.info("rate limit window expired", account_id=state.account_id)
        return False

    def get_retry_after(self, account_id: Optional[str]) -> int:
        """Seconds until the window ends (0 if none). Does not clean up."""
        window = self._account(account_id).get(WINDOW_KIND)
        if window is None:
            return 0
        try:
            expires_at = float(window["expires_at"])
        except (TypeError, KeyError, ValueError):
            return 0
        # Round up so a window with 0.5s left still reports a nonzero wait
        return max(0, math.ceil(expires_at - self.clock()))
