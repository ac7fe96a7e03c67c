"""
Per-account health report for dashboards and status endpoints.

Reads breaker, rate-limit and session state without side effects: unlike
CircuitBreaker.is_available(), nothing here moves an expired OPEN circuit
to HALF_OPEN.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from skygate.core.circuit_breaker import CircuitState
from skygate.services.bluesky import Resilience


@dataclass
class AccountHealth:
    account_id: str
    handle: str
    circuit_state: str
    failure_count: int
    time_until_half_open: Optional[float]
    rate_limited: bool
    retry_after: int
    authenticated: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HealthMonitor:
    def __init__(self, resilience: Resilience):
        self.resilience = resilience

    def account_status(self, account) -> AccountHealth:
        circuit = self.resilience.circuit_breaker.get_status(account.id)
        retry_after = self.resilience.rate_limiter.get_retry_after(account.id)
        return AccountHealth(
            account_id=account.id,
            handle=account.handle,
            circuit_state=circuit["state"],
            failure_count=circuit["failure_count"],
            time_until_half_open=circuit["time_until_half_open"],
            rate_limited=retry_after > 0,
            retry_after=retry_after,
            authenticated=self.resilience.token_cache.get_session(account.id) is not None,
        )

    def report(self, accounts: Iterable) -> Dict[str, Any]:
        """
        Summarize all accounts.

        status is "good" when no circuit is open, "recommended" otherwise
        (requests resume on their own once the cooldown passes).
        """
        statuses: List[AccountHealth] = [self.account_status(a) for a in accounts]
        open_circuits = [s.handle or s.account_id for s in statuses if s.circuit_state == CircuitState.OPEN.value]
        return {
            "status": "recommended" if open_circuits else "good",
            "open_circuits": open_circuits,
            "rate_limited": [s.handle or s.account_id for s in statuses if s.rate_limited],
            "accounts": [s.to_dict() for s in statuses],
        }
