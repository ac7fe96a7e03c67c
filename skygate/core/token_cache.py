"""
Cached session credentials per account.

A successful createSession yields three artifacts (DID, access JWT, refresh
JWT), each stored under its own key with its own TTL. As long as all three are
present the account counts as authenticated and no login call is made. Once
any of them expires (normally the short-lived access token), the next
authenticate() performs a full login again; there is no silent refresh here.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from skygate.core.config import settings
from skygate.core.errors import TransportError, capture_exception
from skygate.core.kv_store import AccountState, KeyValueStore
from skygate.core.logging_config import get_logger
from skygate.core.rate_limit import RateLimiter
from skygate.models.account import Account

logger = get_logger(__name__)

IDENTITY_KIND = "did"
ACCESS_TOKEN_KIND = "access_token"
REFRESH_TOKEN_KIND = "refresh_token"

CREATE_SESSION = "com.atproto.server.createSession"


class LoginOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class SessionTokens:
    did: str
    access_token: str
    refresh_token: str


@dataclass
class TokenCache:
    store: KeyValueStore
    transport: Any  # HttpTransport or anything with the same request() signature
    access_token_ttl: int = field(default_factory=lambda: settings.ACCESS_TOKEN_TTL)
    refresh_token_ttl: int = field(default_factory=lambda: settings.REFRESH_TOKEN_TTL)
    identity_ttl: int = field(default_factory=lambda: settings.IDENTITY_TTL)
    key_prefix: Optional[str] = None
    # When set, a 429 from createSession opens a rate-limit window for the account
    rate_limiter: Optional[RateLimiter] = None

    def _account(self, account_id: Optional[str]) -> AccountState:
        return AccountState(self.store, account_id, prefix=self.key_prefix)

    def get_session(self, account_id: Optional[str]) -> Optional[SessionTokens]:
        """Return the cached tokens, or None if any artifact is missing."""
        state = self._account(account_id)
        did = state.get(IDENTITY_KIND)
        access_token = state.get(ACCESS_TOKEN_KIND)
        refresh_token = state.get(REFRESH_TOKEN_KIND)
        if not (did and access_token and refresh_token):
            return None
        return SessionTokens(did=did, access_token=access_token, refresh_token=refresh_token)

    def authenticate(self, account: Account) -> bool:
        """
        Ensure the account has a cached session, logging in if needed.

        Returns:
            True if tokens are cached (already, or after a successful login),
            False if the login could not be completed. Nothing is stored on
            failure.
        """
        return self.login(account) == LoginOutcome.AUTHENTICATED

    def login(self, account: Account) -> LoginOutcome:
        """Like authenticate(), but tells a throttled login apart from a failed one."""
        if self.get_session(account.id) is not None:
            return LoginOutcome.AUTHENTICATED

        if not account.has_credentials:
            logger.warning("authentication skipped, no credentials", account_id=account.id)
            return LoginOutcome.FAILED

        try:
            response = self.transport.request(
                "POST",
                CREATE_SESSION,
                json={"identifier": account.handle, "password": account.app_password},
            )
        except TransportError as exc:
            capture_exception(exc, context={"account_id": account.id, "xrpc_method": CREATE_SESSION})
            return LoginOutcome.FAILED

        if self.rate_limiter is not None and self.rate_limiter.check_rate_limit(response, account.id):
            logger.warning("authentication rate limited", account_id=account.id)
            return LoginOutcome.RATE_LIMITED

        if not 200 <= response.status_code < 300:
            logger.warning("authentication failed", account_id=account.id, status_code=response.status_code)
            return LoginOutcome.FAILED

        try:
            body = response.json()
        except ValueError:
            logger.warning("authentication response not JSON", account_id=account.id)
            return LoginOutcome.FAILED

        tokens = self._parse_session(body)
        if tokens is None:
            logger.warning("authentication response missing tokens", account_id=account.id)
            return LoginOutcome.FAILED

        state = self._account(account.id)
        state.set(ACCESS_TOKEN_KIND, tokens.access_token, self.access_token_ttl)
        state.set(REFRESH_TOKEN_KIND, tokens.refresh_token, self.refresh_token_ttl)
        state.set(IDENTITY_KIND, tokens.did, self.identity_ttl)
        logger.info("authenticated", account_id=account.id, did=tokens.did)
        return LoginOutcome.AUTHENTICATED

    @staticmethod
    def _parse_session(body: Any) -> Optional[SessionTokens]:
        if not isinstance(body, dict):
            return None
        did = body.get("did")
        access_token = body.get("accessJwt")
        refresh_token = body.get("refreshJwt")
        if not all(isinstance(v, str) and v for v in (did, access_token, refresh_token)):
            return None
        return SessionTokens(did=did, access_token=access_token, refresh_token=refresh_token)

    def clear(self, account_id: Optional[str]) -> None:
        """Drop all cached session artifacts (logout)."""
        state = self._account(account_id)
        for kind in (ACCESS_TOKEN_KIND, REFRESH_TOKEN_KIND, IDENTITY_KIND):
            state.delete(kind)
        logger.info("session cleared", account_id=state.account_id)
