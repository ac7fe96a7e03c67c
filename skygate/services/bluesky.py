"""
Bluesky API orchestrator.

Every outbound call for an account goes through the same gates, in order:

    response cache hit?     -> get_profile/get_author_feed only, stored across cycles
    request cache hit?      -> return memoized data, no network
    rate limited?           -> RATE_LIMITED (retry_after set), no network
    circuit unavailable?    -> CIRCUIT_OPEN, no network
    session cached?         -> otherwise log in (a 429 opens a rate-limit window,
                               any other failure counts against the breaker)
    network call            -> 429 feeds the rate limiter
                               transport error / non-2xx feed breaker failure
                               2xx feeds breaker success and the request cache

Gate decisions come back as an ApiResult rather than an exception. Nothing
here retries; a blocked or failed call simply yields no data this cycle.

Usage:
    resilience = Resilience.create()
    client = BlueskyClient(account, resilience)

    client.begin_cycle()
    result = client.get_profile()
    if result.ok:
        render(result.data)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
import time

from skygate.core.circuit_breaker import CircuitBreaker
from skygate.core.config import settings
from skygate.core.context import account_context, generate_cycle_id, set_cycle_id
from skygate.core.errors import (
    AuthenticationFailed,
    CircuitOpen,
    RateLimited,
    SkygateError,
    TransportError,
    capture_exception,
    init_sentry,
    is_sentry_enabled,
)
from skygate.core.kv_store import AccountState, KeyValueStore, build_store
from skygate.core.logging_config import get_logger
from skygate.core.rate_limit import RateLimiter
from skygate.core.request_cache import MISSING, RequestCache, digest
from skygate.core.token_cache import LoginOutcome, TokenCache
from skygate.models.account import Account
from skygate.services.transport import HttpTransport

logger = get_logger(__name__)

GET_PROFILE = "app.bsky.actor.getProfile"
GET_AUTHOR_FEED = "app.bsky.feed.getAuthorFeed"
CREATE_RECORD = "com.atproto.repo.createRecord"

POST_COLLECTION = "app.bsky.feed.post"
REPOST_REASON = "app.bsky.feed.defs#reasonRepost"
LINK_FACET = "app.bsky.richtext.facet#link"

# The API caps getAuthorFeed at 100; over-fetch when filtering so enough posts survive
FEED_FETCH_LIMIT = 100


class ResultStatus(str, Enum):
    OK = "ok"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSPORT_ERROR = "transport_error"
    HTTP_ERROR = "http_error"


@dataclass
class ApiResult:
    status: ResultStatus
    account_id: str
    data: Any = None
    status_code: Optional[int] = None
    retry_after: int = 0
    error: Optional[str] = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.OK

    def raise_for_status(self) -> "ApiResult":
        """Raise the matching SkygateError for a non-OK result, else return self."""
        if self.status == ResultStatus.OK:
            return self
        if self.status == ResultStatus.RATE_LIMITED:
            raise RateLimited(self.account_id, retry_after=self.retry_after)
        if self.status == ResultStatus.CIRCUIT_OPEN:
            raise CircuitOpen(self.account_id)
        if self.status == ResultStatus.AUTH_FAILED:
            raise AuthenticationFailed(self.error or "Authentication failed", account_id=self.account_id)
        if self.status == ResultStatus.TRANSPORT_ERROR:
            raise TransportError(self.error or "Transport error", account_id=self.account_id)
        raise SkygateError(self.error or f"HTTP {self.status_code}", account_id=self.account_id)


@dataclass
class Resilience:
    """The shared, store-backed components used by every account's client."""

    store: KeyValueStore
    transport: Any
    circuit_breaker: CircuitBreaker
    rate_limiter: RateLimiter
    token_cache: TokenCache
    clock: Any = field(default=time.time)

    @classmethod
    def create(
        cls,
        store: Optional[KeyValueStore] = None,
        transport: Any = None,
        clock=time.time,
    ) -> "Resilience":
        store = store if store is not None else build_store(clock=clock)
        transport = transport if transport is not None else HttpTransport()
        if settings.SENTRY_DSN and not is_sentry_enabled():
            init_sentry(settings.SENTRY_DSN, environment=settings.SENTRY_ENVIRONMENT)
        rate_limiter = RateLimiter(store, clock=clock)
        return cls(
            store=store,
            transport=transport,
            circuit_breaker=CircuitBreaker(store, clock=clock),
            rate_limiter=rate_limiter,
            token_cache=TokenCache(store, transport, rate_limiter=rate_limiter),
            clock=clock,
        )


class BlueskyClient:
    def __init__(
        self,
        account: Account,
        resilience: Resilience,
        request_cache: Optional[RequestCache] = None,
        response_cache_ttl: Optional[int] = None,
    ):
        self.account = account
        self.resilience = resilience
        self.request_cache = request_cache if request_cache is not None else RequestCache()
        # Persistent profile/feed cache across cycles; 0 disables it
        self.response_cache_ttl = settings.RESPONSE_CACHE_TTL if response_cache_ttl is None else response_cache_ttl

    @property
    def account_id(self) -> str:
        return self.account.id

    def begin_cycle(self, cycle_id: Optional[str] = None) -> str:
        """Start a new processing cycle: fresh memo cache and cycle id."""
        self.request_cache.flush()
        cycle_id = cycle_id or generate_cycle_id()
        set_cycle_id(cycle_id)
        return cycle_id

    def _result(self, status: ResultStatus, **kwargs) -> ApiResult:
        return ApiResult(status=status, account_id=self.account_id, **kwargs)

    def call(
        self,
        xrpc_method: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        http_method: str = "GET",
        body: Any = None,
        memoize: Optional[bool] = None,
    ) -> ApiResult:
        """
        Run one XRPC call through the cache and resilience gates.

        Args:
            xrpc_method: e.g. "app.bsky.actor.getProfile"
            params: Query parameters (GET)
            http_method: "GET" or "POST"
            body: JSON body (POST)
            memoize: Defaults to True for GET, False otherwise
        """
        if memoize is None:
            memoize = http_method.upper() == "GET"

        r = self.resilience
        with account_context(self.account_id):
            cache_key = None
            if memoize:
                cache_key = self.request_cache.build_key(
                    xrpc_method,
                    {"account": self.account_id, "params": dict(params or {}), "body": body},
                )
                cached = self.request_cache.get(cache_key)
                if cached is not MISSING:
                    return self._result(ResultStatus.OK, data=cached, from_cache=True)

            if r.rate_limiter.is_rate_limited(self.account_id):
                retry_after = r.rate_limiter.get_retry_after(self.account_id)
                logger.info("call blocked: rate limited", xrpc_method=xrpc_method, retry_after=retry_after)
                return self._result(ResultStatus.RATE_LIMITED, retry_after=retry_after)

            if not r.circuit_breaker.is_available(self.account_id):
                logger.info("call blocked: circuit open", xrpc_method=xrpc_method)
                return self._result(ResultStatus.CIRCUIT_OPEN)

            outcome = r.token_cache.login(self.account)
            if outcome == LoginOutcome.RATE_LIMITED:
                # Throttled login: the limiter owns this, the breaker does not
                return self._result(
                    ResultStatus.RATE_LIMITED,
                    status_code=429,
                    retry_after=r.rate_limiter.get_retry_after(self.account_id),
                )
            session = r.token_cache.get_session(self.account_id) if outcome == LoginOutcome.AUTHENTICATED else None
            if session is None:
                r.circuit_breaker.record_failure(self.account_id)
                return self._result(ResultStatus.AUTH_FAILED, error="Authentication failed")

            try:
                response = r.transport.request(
                    http_method,
                    xrpc_method,
                    params=params,
                    json=body,
                    token=session.access_token,
                )
            except TransportError as exc:
                capture_exception(exc, context={"xrpc_method": xrpc_method})
                r.circuit_breaker.record_failure(self.account_id)
                return self._result(ResultStatus.TRANSPORT_ERROR, error=str(exc))

            if r.rate_limiter.check_rate_limit(response, self.account_id):
                return self._result(
                    ResultStatus.RATE_LIMITED,
                    status_code=response.status_code,
                    retry_after=r.rate_limiter.get_retry_after(self.account_id),
                )

            if not 200 <= response.status_code < 300:
                r.circuit_breaker.record_failure(self.account_id)
                if response.status_code == 401:
                    # Token rejected server-side; force a fresh login next time
                    r.token_cache.clear(self.account_id)
                logger.warning("call failed", xrpc_method=xrpc_method, status_code=response.status_code)
                return self._result(
                    ResultStatus.HTTP_ERROR,
                    status_code=response.status_code,
                    error=_error_message(response),
                )

            r.circuit_breaker.record_success(self.account_id)
            data = _decode(response)
            if cache_key is not None:
                self.request_cache.set(cache_key, data)
            return self._result(ResultStatus.OK, data=data, status_code=response.status_code)

    def _default_actor(self) -> str:
        # Handle first so the memo key does not change once a DID is cached
        if self.account.handle:
            return self.account.handle
        session = self.resilience.token_cache.get_session(self.account_id)
        return session.did if session is not None else ""

    def _response_kind(self, xrpc_method: str, params: Mapping[str, Any]) -> str:
        return f"response_{digest(xrpc_method, params)}"

    def _cached_response(self, kind: str) -> Any:
        if self.response_cache_ttl <= 0:
            return MISSING
        return AccountState(self.resilience.store, self.account_id).get(kind, MISSING)

    def _store_response(self, kind: str, data: Any) -> None:
        if self.response_cache_ttl > 0:
            AccountState(self.resilience.store, self.account_id).set(kind, data, ttl=self.response_cache_ttl)

    def get_profile(self, actor: Optional[str] = None) -> ApiResult:
        params = {"actor": actor or self._default_actor()}
        kind = self._response_kind(GET_PROFILE, params)
        cached = self._cached_response(kind)
        if cached is not MISSING:
            return self._result(ResultStatus.OK, data=cached, from_cache=True)

        result = self.call(GET_PROFILE, params)
        if result.ok and not result.from_cache:
            self._store_response(kind, result.data)
        return result

    def get_author_feed(
        self,
        limit: Optional[int] = None,
        no_replies: bool = True,
        no_reposts: bool = True,
        actor: Optional[str] = None,
    ) -> ApiResult:
        """
        Fetch the account's recent posts, normalized and newest first.

        Replies and reposts are dropped by default; when filtering, more posts
        are requested so that `limit` originals can still be returned.

        The processed list is kept in the store for response_cache_ttl
        seconds, keyed by actor, limit and both filter flags.
        """
        limit = max(1, min(FEED_FETCH_LIMIT, int(limit or settings.FEED_DEFAULT_LIMIT)))
        fetch_limit = FEED_FETCH_LIMIT if (no_replies or no_reposts) else limit

        actor = actor or self._default_actor()
        kind = self._response_kind(
            GET_AUTHOR_FEED,
            {"actor": actor, "limit": limit, "no_replies": no_replies, "no_reposts": no_reposts},
        )
        cached = self._cached_response(kind)
        if cached is not MISSING:
            return self._result(ResultStatus.OK, data=cached, from_cache=True)

        result = self.call(GET_AUTHOR_FEED, {"actor": actor, "limit": fetch_limit})
        if not result.ok:
            return result

        entries = (result.data.get("feed") or []) if isinstance(result.data, dict) else []
        posts = filter_feed(entries, no_replies=no_replies, no_reposts=no_reposts)[:limit]
        normalized = [normalize_post(entry["post"]) for entry in posts]
        normalized.sort(key=lambda p: p["created_at"], reverse=True)
        if not result.from_cache:
            self._store_response(kind, normalized)
        return self._result(
            ResultStatus.OK,
            data=normalized,
            status_code=result.status_code,
            from_cache=result.from_cache,
        )

    def create_post(self, title: str, permalink: str, created_at: Optional[datetime] = None) -> ApiResult:
        """Publish a link post ("<title>\\n\\n<permalink>") to the account's feed."""
        session = self.resilience.token_cache.get_session(self.account_id)
        record = build_link_post(title, permalink, created_at)
        body = {
            "repo": session.did if session else self.account.handle,
            "collection": POST_COLLECTION,
            "record": record,
        }
        return self.call(CREATE_RECORD, http_method="POST", body=body, memoize=False)

    def logout(self) -> None:
        """Drop the cached session and memoized responses for this account."""
        self.resilience.token_cache.clear(self.account_id)
        self.request_cache.flush()

    def forget_account(self) -> int:
        """Remove every piece of persisted state for this account."""
        self.request_cache.flush()
        return AccountState(self.resilience.store, self.account_id).clear()


def _decode(response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(response) -> str:
    data = _decode(response)
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


def filter_feed(entries: List[Dict[str, Any]], no_replies: bool = True, no_reposts: bool = True) -> List[Dict[str, Any]]:
    kept = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        post = entry.get("post")
        if not isinstance(post, dict):
            continue
        if no_replies and "reply" in (post.get("record") or {}):
            continue
        reason = entry.get("reason") or {}
        if no_reposts and reason.get("$type") == REPOST_REASON:
            continue
        kept.append(entry)
    return kept


def normalize_post(post: Dict[str, Any]) -> Dict[str, Any]:
    record = post.get("record") or {}
    author = post.get("author") or {}
    embed = post.get("embed") or {}
    uri = post.get("uri") or ""
    rkey = uri.rsplit("/", 1)[-1]

    images = [
        {
            "url": image.get("fullsize") or image.get("thumb") or "",
            "alt": image.get("alt", ""),
            "width": (image.get("aspectRatio") or {}).get("width", 0),
            "height": (image.get("aspectRatio") or {}).get("height", 0),
        }
        for image in embed.get("images") or []
        if isinstance(image, dict)
    ]

    external = embed.get("external") or (embed.get("media") or {}).get("external")
    external_media = None
    if external:
        external_media = {
            "uri": external.get("uri", ""),
            "title": external.get("title", ""),
            "description": external.get("description", ""),
            "thumb": external.get("thumb", ""),
        }

    return {
        "uri": uri,
        "cid": post.get("cid") or "",
        "text": record.get("text") or "",
        "langs": record.get("langs") or ["en"],
        "created_at": record.get("createdAt") or "",
        "url": f"https://bsky.app/profile/{author.get('handle', '')}/post/{rkey}",
        "account": {
            "did": author.get("did", ""),
            "handle": author.get("handle", ""),
            "display_name": author.get("displayName", ""),
            "avatar": author.get("avatar", ""),
        },
        "images": images,
        "external_media": external_media,
        "counts": {
            "reply": post.get("replyCount", 0),
            "repost": post.get("repostCount", 0),
            "like": post.get("likeCount", 0),
            "quote": post.get("quoteCount", 0),
        },
        "facets": record.get("facets") or [],
    }


def build_link_post(title: str, permalink: str, created_at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Build an app.bsky.feed.post record linking to permalink.

    Facet offsets are UTF-8 byte positions, as the API requires.
    """
    text = f"{title.strip()}\n\n{permalink}"
    byte_start = len(text.encode("utf-8")) - len(permalink.encode("utf-8"))
    byte_end = byte_start + len(permalink.encode("utf-8"))
    created_at = created_at or datetime.now(timezone.utc)
    return {
        "$type": POST_COLLECTION,
        "text": text,
        "facets": [
            {
                "index": {"byteStart": byte_start, "byteEnd": byte_end},
                "features": [{"$type": LINK_FACET, "uri": permalink}],
            }
        ],
        "createdAt": created_at.isoformat().replace("+00:00", "Z"),
    }
