"""
Tests for the per-account health report.
"""

import httpx

from skygate.services.health import HealthMonitor


class TestAccountStatus:
    """Tests for HealthMonitor.account_status."""

    def test_fresh_account(self, resilience, account):
        """A new account is closed, unthrottled and not logged in."""
        health = HealthMonitor(resilience).account_status(account)

        assert health.to_dict() == {
            "account_id": account.id,
            "handle": account.handle,
            "circuit_state": "closed",
            "failure_count": 0,
            "time_until_half_open": None,
            "rate_limited": False,
            "retry_after": 0,
            "authenticated": False,
        }

    def test_reflects_breaker_and_limiter(self, resilience, account, clock):
        for _ in range(3):
            resilience.circuit_breaker.record_failure(account.id)
        resilience.rate_limiter.check_rate_limit(httpx.Response(429, headers={"Retry-After": "45"}), account.id)
        clock.advance(15)

        health = HealthMonitor(resilience).account_status(account)

        assert health.circuit_state == "open"
        assert health.failure_count == 3
        assert health.time_until_half_open == 885
        assert health.rate_limited is True
        assert health.retry_after == 30

    def test_last_partial_second_still_rate_limited(self, resilience, account, clock):
        """rate_limited agrees with the limiter until the window has fully passed."""
        resilience.rate_limiter.check_rate_limit(httpx.Response(429, headers={"Retry-After": "45"}), account.id)
        clock.advance(44.5)

        health = HealthMonitor(resilience).account_status(account)

        assert health.rate_limited is True
        assert health.retry_after == 1
        assert resilience.rate_limiter.is_rate_limited(account.id) is True

    def test_authenticated_after_login(self, resilience, account):
        resilience.token_cache.authenticate(account)

        assert HealthMonitor(resilience).account_status(account).authenticated is True

    def test_does_not_move_circuit_to_half_open(self, resilience, account, clock):
        """Reading health after the cooldown leaves the circuit OPEN."""
        for _ in range(3):
            resilience.circuit_breaker.record_failure(account.id)
        clock.advance(1000)

        HealthMonitor(resilience).account_status(account)

        assert resilience.circuit_breaker.get_status(account.id)["state"] == "open"


class TestReport:
    """Tests for HealthMonitor.report."""

    def test_all_good(self, resilience, account, other_account):
        report = HealthMonitor(resilience).report([account, other_account])

        assert report["status"] == "good"
        assert report["open_circuits"] == []
        assert report["rate_limited"] == []
        assert len(report["accounts"]) == 2

    def test_open_circuit_recommends_attention(self, resilience, account, other_account):
        for _ in range(3):
            resilience.circuit_breaker.record_failure(other_account.id)
        resilience.rate_limiter.check_rate_limit(httpx.Response(429), account.id)

        report = HealthMonitor(resilience).report([account, other_account])

        assert report["status"] == "recommended"
        assert report["open_circuits"] == [other_account.handle]
        assert report["rate_limited"] == [account.handle]
