"""
HTTP transport for the Bluesky XRPC API.

Thin wrapper around httpx.Client. Any HTTP status comes back as a response;
only network errors and timeouts raise (as TransportError), so callers can
feed them into the circuit breaker.
"""

from typing import Any, Mapping, Optional

import httpx

from skygate.core.config import settings
from skygate.core.errors import TransportError
from skygate.core.logging_config import get_logger

logger = get_logger(__name__)

USER_AGENT = "skygate/0.1 (+https://bsky.social)"


class HttpTransport:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.BLUESKY_API_URL).rstrip("/") + "/"
        self._client = client or httpx.Client(
            timeout=timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            transport=transport,
        )

    def url_for(self, xrpc_method: str) -> str:
        return self.base_url + xrpc_method

    def request(
        self,
        method: str,
        xrpc_method: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self._client.request(
                method,
                self.url_for(xrpc_method),
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout calling {xrpc_method}", cause=e) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error calling {xrpc_method}: {e}", cause=e) from e

        logger.debug("xrpc response", method=method, xrpc_method=xrpc_method, status_code=response.status_code)
        return response

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
