"""
Publish one post to several accounts.

Accounts are processed sequentially. An account whose circuit is open or
which is inside a rate-limit window is skipped without a network call; a
failure on one account never prevents the others from being attempted.
Retrying skipped or failed accounts is left to the caller.

Each attempt is recorded in the store under the permalink, one entry per
account:

    {"uri": ..., "cid": ..., "url": "https://bsky.app/profile/<handle>/post/<rkey>",
     "syndicated_at": "2024-01-02T03:04:05+00:00", "success": True}

An account that already has a successful record for the permalink is not
posted to again, so calling syndicate() twice for the same link (a retry
after a partial failure, say) only reaches the accounts still missing.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from skygate.core.context import generate_cycle_id, set_cycle_id
from skygate.core.logging_config import get_logger
from skygate.core.request_cache import RequestCache, digest
from skygate.models.account import Account
from skygate.services.bluesky import ApiResult, BlueskyClient, Resilience, ResultStatus

logger = get_logger(__name__)

RECORDS_PREFIX = "bluesky_syndication_"

DEFERRED = (ResultStatus.CIRCUIT_OPEN, ResultStatus.RATE_LIMITED)


def records_key(permalink: str) -> str:
    return f"{RECORDS_PREFIX}{digest('syndication', {'permalink': permalink})}"


def post_url(handle: Optional[str], uri: str) -> str:
    if not uri:
        return ""
    return f"https://bsky.app/profile/{handle or ''}/post/{uri.rsplit('/', 1)[-1]}"


class SyndicationService:
    def __init__(self, resilience: Resilience):
        self.resilience = resilience

    def get_records(self, permalink: str) -> Dict[str, Dict[str, Any]]:
        """Syndication records for permalink, keyed by account id."""
        records = self.resilience.store.get(records_key(permalink))
        return dict(records) if isinstance(records, dict) else {}

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self.resilience.clock(), timezone.utc).isoformat()

    def _record(self, account: Account, result: ApiResult) -> Dict[str, Any]:
        if result.ok:
            data = result.data if isinstance(result.data, dict) else {}
            uri = data.get("uri") or ""
            return {
                "uri": uri,
                "cid": data.get("cid") or "",
                "url": post_url(account.handle, uri),
                "syndicated_at": self._timestamp(),
                "success": True,
            }
        return {
            "uri": "",
            "cid": "",
            "url": "",
            "syndicated_at": self._timestamp(),
            "success": False,
            "error": result.error or result.status.value,
        }

    def syndicate(
        self,
        title: str,
        permalink: str,
        accounts: Iterable[Account],
        cycle_id: Optional[str] = None,
    ) -> Dict[str, ApiResult]:
        """
        Post title + permalink to each account not yet syndicated.

        Returns:
            ApiResult per account id. Accounts skipped because they already
            succeeded get an OK result with from_cache=True and their stored
            record as data; new successes carry the new record as data.
        """
        set_cycle_id(cycle_id or generate_cycle_id())
        request_cache = RequestCache()
        records = self.get_records(permalink)
        results: Dict[str, ApiResult] = {}
        already_syndicated = 0

        for account in accounts:
            if account.id in results:
                continue

            previous = records.get(account.id)
            if previous and previous.get("success"):
                logger.info("syndication skipped: already posted", account_id=account.id, url=previous.get("url"))
                results[account.id] = ApiResult(
                    status=ResultStatus.OK,
                    account_id=account.id,
                    data=previous,
                    from_cache=True,
                )
                already_syndicated += 1
                continue

            client = BlueskyClient(account, self.resilience, request_cache=request_cache)
            result = client.create_post(title, permalink)
            results[account.id] = result

            if result.status in DEFERRED:
                logger.info(
                    "syndication deferred",
                    account_id=account.id,
                    reason=result.status.value,
                    retry_after=result.retry_after,
                )
                continue

            record = self._record(account, result)
            records[account.id] = record
            # Persist after every attempt so a crash mid-loop keeps earlier successes
            self.resilience.store.set(records_key(permalink), records)

            if result.ok:
                result.data = record
                logger.info("syndication succeeded", account_id=account.id, handle=account.handle, url=record["url"])
            else:
                logger.warning(
                    "syndication failed",
                    account_id=account.id,
                    reason=result.status.value,
                    status_code=result.status_code,
                    error=result.error,
                )

        summary = {status.value: 0 for status in ResultStatus}
        for result in results.values():
            summary[result.status.value] += 1
        logger.info(
            "syndication finished",
            permalink=permalink,
            already_syndicated=already_syndicated,
            **{k: v for k, v in summary.items() if v},
        )
        return results
