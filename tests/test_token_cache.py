"""
Tests for cached session credentials.

Tests cover:
- No login when all three artifacts are cached
- Exactly one login when any artifact is missing
- Nothing persisted on failed logins
- A throttled login opening a rate-limit window
- Expiry of the access token forcing a fresh login
- Account isolation
"""

import json

import httpx

from skygate.core.kv_store import AccountState
from skygate.core.token_cache import (
    ACCESS_TOKEN_KIND,
    CREATE_SESSION,
    IDENTITY_KIND,
    REFRESH_TOKEN_KIND,
    LoginOutcome,
    SessionTokens,
    TokenCache,
)
from skygate.models.account import Account


def seed_session(store, account_id, did="did:plc:seed", access="a", refresh="r"):
    state = AccountState(store, account_id)
    state.set(IDENTITY_KIND, did)
    state.set(ACCESS_TOKEN_KIND, access)
    state.set(REFRESH_TOKEN_KIND, refresh)


class TestCachedSession:
    """Tests for the no-network path."""

    def test_all_artifacts_present_skips_login(self, token_cache, store, fake_api, account):
        """With did/access/refresh cached, no transport call is made."""
        seed_session(store, account.id)

        assert token_cache.authenticate(account) is True
        assert fake_api.requests == []

    def test_get_session_returns_tokens(self, token_cache, store, account):
        """get_session returns the cached artifacts."""
        seed_session(store, account.id, did="did:plc:x", access="acc", refresh="ref")

        assert token_cache.get_session(account.id) == SessionTokens(
            did="did:plc:x", access_token="acc", refresh_token="ref"
        )

    def test_get_session_none_when_partial(self, token_cache, store, account):
        """Any missing artifact means no session."""
        seed_session(store, account.id)
        AccountState(store, account.id).delete(REFRESH_TOKEN_KIND)

        assert token_cache.get_session(account.id) is None


class TestLogin:
    """Tests for the createSession path."""

    def test_missing_tokens_triggers_one_login(self, token_cache, fake_api, account):
        """No cached session means exactly one createSession call."""
        assert token_cache.authenticate(account) is True

        calls = fake_api.calls(CREATE_SESSION)
        assert len(calls) == 1
        assert calls[0].method == "POST"

    def test_login_sends_handle_and_password(self, token_cache, fake_api, account):
        """The login body carries the account's identifier and app password."""
        token_cache.authenticate(account)

        request = fake_api.calls(CREATE_SESSION)[0]
        assert json.loads(request.content) == {
            "identifier": "alice.bsky.social",
            "password": "app-pass-1234",
        }

    def test_successful_login_persists_all_artifacts(self, token_cache, account):
        """After login all three artifacts are present."""
        token_cache.authenticate(account)

        session = token_cache.get_session(account.id)
        assert session == SessionTokens(
            did="did:plc:alice", access_token="access-jwt-1", refresh_token="refresh-jwt-1"
        )

    def test_second_authenticate_uses_cache(self, token_cache, fake_api, account):
        """A second authenticate right after login makes no call."""
        token_cache.authenticate(account)
        token_cache.authenticate(account)

        assert len(fake_api.calls(CREATE_SESSION)) == 1

    def test_single_missing_artifact_forces_full_login(self, token_cache, store, fake_api, account):
        """Losing only the access token triggers a fresh login."""
        seed_session(store, account.id)
        AccountState(store, account.id).delete(ACCESS_TOKEN_KIND)

        assert token_cache.authenticate(account) is True
        assert len(fake_api.calls(CREATE_SESSION)) == 1
        assert token_cache.get_session(account.id).access_token == "access-jwt-1"

    def test_access_token_expiry_forces_login(self, token_cache, fake_api, account, clock):
        """Once the access token TTL passes, the next authenticate logs in again."""
        token_cache.authenticate(account)

        clock.advance(3599)
        token_cache.authenticate(account)
        assert len(fake_api.calls(CREATE_SESSION)) == 1

        clock.advance(1)
        token_cache.authenticate(account)
        assert len(fake_api.calls(CREATE_SESSION)) == 2


class TestFailedLogin:
    """Failed logins return False and store nothing."""

    def test_error_status(self, token_cache, store, fake_api, account):
        """A 401 from createSession fails without persisting."""
        fake_api.on(CREATE_SESSION, status=401, json={"error": "AuthenticationRequired"})

        assert token_cache.authenticate(account) is False
        assert token_cache.get_session(account.id) is None
        assert AccountState(store, account.id).get(IDENTITY_KIND) is None

    def test_transport_error(self, token_cache, account, fake_api):
        """A network error fails the login."""
        fake_api.on(CREATE_SESSION, error=httpx.ConnectError)

        assert token_cache.authenticate(account) is False
        assert token_cache.get_session(account.id) is None

    def test_malformed_body(self, token_cache, store, account, fake_api):
        """A 200 missing refreshJwt persists nothing."""
        fake_api.on(CREATE_SESSION, json={"did": "did:plc:alice", "accessJwt": "x"})

        assert token_cache.authenticate(account) is False
        state = AccountState(store, account.id)
        assert state.get(IDENTITY_KIND) is None
        assert state.get(ACCESS_TOKEN_KIND) is None

    def test_non_json_body(self, store, account):
        """A 200 with a non-JSON body fails cleanly."""
        from skygate.services.transport import HttpTransport

        def handler(request):
            return httpx.Response(200, content=b"<html>maintenance</html>")

        transport = HttpTransport(base_url="https://bsky.test/xrpc/", transport=httpx.MockTransport(handler))
        cache = TokenCache(store, transport)

        assert cache.authenticate(account) is False

    def test_missing_credentials_makes_no_call(self, token_cache, fake_api):
        """An account without handle/password cannot log in."""
        assert token_cache.authenticate(Account(id="empty")) is False
        assert fake_api.requests == []


class TestRateLimitedLogin:
    """A 429 from createSession with a rate limiter attached."""

    def test_429_reports_rate_limited(self, store, transport, limiter, fake_api, account):
        """The login is reported as throttled and a window is opened."""
        cache = TokenCache(store, transport, rate_limiter=limiter)
        fake_api.on(CREATE_SESSION, status=429, headers={"Retry-After": "300"})

        assert cache.login(account) == LoginOutcome.RATE_LIMITED
        assert cache.get_session(account.id) is None
        assert limiter.is_rate_limited(account.id) is True
        assert limiter.get_retry_after(account.id) == 300

    def test_authenticate_is_false_when_throttled(self, store, transport, limiter, fake_api, account):
        cache = TokenCache(store, transport, rate_limiter=limiter)
        fake_api.on(CREATE_SESSION, status=429)

        assert cache.authenticate(account) is False

    def test_429_without_limiter_is_a_failure(self, token_cache, fake_api, account):
        """With no limiter attached a 429 is just a failed login."""
        fake_api.on(CREATE_SESSION, status=429, headers={"Retry-After": "300"})

        assert token_cache.login(account) == LoginOutcome.FAILED

    def test_login_outcomes(self, token_cache, fake_api, account):
        fake_api.on(CREATE_SESSION, status=401)

        assert token_cache.login(account) == LoginOutcome.FAILED
        assert token_cache.login(account) == LoginOutcome.AUTHENTICATED
        assert token_cache.login(account) == LoginOutcome.AUTHENTICATED
        assert len(fake_api.calls(CREATE_SESSION)) == 2


class TestIsolation:
    """Sessions are per account."""

    def test_accounts_do_not_share_tokens(self, token_cache, fake_api, account, other_account):
        """Bob still needs his own login after Alice logs in."""
        token_cache.authenticate(account)
        fake_api.session_body = {
            "did": "did:plc:bob",
            "accessJwt": "bob-access",
            "refreshJwt": "bob-refresh",
        }
        token_cache.authenticate(other_account)

        assert len(fake_api.calls(CREATE_SESSION)) == 2
        assert token_cache.get_session(account.id).did == "did:plc:alice"
        assert token_cache.get_session(other_account.id).did == "did:plc:bob"

    def test_clear_only_affects_one_account(self, token_cache, store, account, other_account):
        """clear() drops one account's session."""
        seed_session(store, account.id)
        seed_session(store, other_account.id)

        token_cache.clear(account.id)

        assert token_cache.get_session(account.id) is None
        assert token_cache.get_session(other_account.id) is not None
