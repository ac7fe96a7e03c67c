"""
Test fixtures for skygate tests.

Provides a controllable clock, memory/database stores, and a fake Bluesky
XRPC server built on httpx.MockTransport so no test touches the network.
"""

import random
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from skygate.core.circuit_breaker import CircuitBreaker
from skygate.core.kv_store import DatabaseStore, MemoryStore
from skygate.core.rate_limit import RateLimiter
from skygate.core.token_cache import TokenCache
from skygate.models.account import Account
from skygate.models.kv_entry import KeyValueEntry  # noqa: F401  (registers table)
from skygate.services.bluesky import Resilience
from skygate.services.transport import HttpTransport

TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_API_URL = "https://bsky.test/xrpc/"

SESSION_BODY = {
    "did": "did:plc:alice",
    "handle": "alice.bsky.social",
    "accessJwt": "access-jwt-1",
    "refreshJwt": "refresh-jwt-1",
}


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBlueskyAPI:
    """
    Minimal XRPC server for httpx.MockTransport.

    Responses are queued per XRPC method with on(); when a method's queue is
    empty the default response is served (a valid session for
    createSession, an empty JSON object otherwise).
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._queued: Dict[str, deque] = defaultdict(deque)
        self.session_body: Dict[str, Any] = dict(SESSION_BODY)

    def on(
        self,
        xrpc_method: str,
        status: int = 200,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        error: Optional[type] = None,
        times: int = 1,
    ) -> "FakeBlueskyAPI":
        for _ in range(times):
            self._queued[xrpc_method].append({"status": status, "json": json, "headers": headers, "error": error})
        return self

    def calls(self, xrpc_method: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.rsplit("/", 1)[-1] == xrpc_method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        xrpc_method = request.url.path.rsplit("/", 1)[-1]

        if self._queued[xrpc_method]:
            queued = self._queued[xrpc_method].popleft()
            if queued["error"] is not None:
                raise queued["error"]("simulated failure", request=request)
            return httpx.Response(queued["status"], json=queued["json"], headers=queued["headers"])

        if xrpc_method == "com.atproto.server.createSession":
            return httpx.Response(200, json=self.session_body)
        return httpx.Response(200, json={})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(maxsize=1000, clock=clock)


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def db_store(test_engine, clock) -> DatabaseStore:
    return DatabaseStore(engine=test_engine, clock=clock)


@pytest.fixture
def breaker(store, clock) -> CircuitBreaker:
    return CircuitBreaker(store, clock=clock)


@pytest.fixture
def limiter(store, clock) -> RateLimiter:
    return RateLimiter(store, clock=clock, rng=random.Random(1234))


@pytest.fixture
def fake_api() -> FakeBlueskyAPI:
    return FakeBlueskyAPI()


@pytest.fixture
def transport(fake_api):
    t = HttpTransport(base_url=TEST_API_URL, transport=httpx.MockTransport(fake_api.handler))
    yield t
    t.close()


@pytest.fixture
def token_cache(store, transport) -> TokenCache:
    return TokenCache(store, transport)


@pytest.fixture
def resilience(store, transport, clock) -> Resilience:
    return Resilience.create(store=store, transport=transport, clock=clock)


@pytest.fixture
def account() -> Account:
    return Account(id="acct-alice", handle="alice.bsky.social", app_password="app-pass-1234")


@pytest.fixture
def other_account() -> Account:
    return Account(id="acct-bob", handle="bob.bsky.social", app_password="app-pass-5678")
