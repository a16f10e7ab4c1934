"""
HTTP remote store backed by httpx.

Wire protocol (JSON):
    POST {base_url}/sync/push   {"items": [PushItem...]}  -> {"acks": [PushAck...]}
    GET  {base_url}/sync/pull?checkpoint=&scope=&limit=    -> PullPage

Error mapping:
    - Connection errors, timeouts, 5xx and 429 -> RemoteUnavailableError
    - Other 4xx -> RemoteRejectedError
    - Per-item staleness comes back inside the acks ("stale"), also when
      the server answers 409 with an acks body
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    PullPage,
    PushAck,
    PushItem,
    RemoteRejectedError,
    RemoteUnavailableError,
)

logger = logging.getLogger(__name__)


class HttpRemoteStore:
    """RemoteStore over HTTP.

    Example:
        >>> remote = HttpRemoteStore("https://sync.example.com", api_token="...")
        >>> await remote.connect()
        >>> page = await remote.pull_since(None, "me")
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        api_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the HTTP remote.

        Args:
            base_url: Server base URL
            timeout_seconds: Request timeout
            api_token: Bearer token (never logged)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._api_token = api_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the HTTP client."""
        if self._client is not None:
            return
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            headers=headers,
            transport=self._transport,
        )
        logger.info("HTTP remote connected", extra={"base_url": self.base_url})

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("HTTP remote closed")

    async def push_batch(self, items: List[PushItem]) -> List[PushAck]:
        """POST a batch and parse the per-item acks.

        Raises:
            RemoteUnavailableError: Transient failure
            RemoteRejectedError: Batch refused or response malformed
        """
        response = await self._request(
            "POST",
            "/sync/push",
            json={"items": [item.to_dict() for item in items]},
            allow_conflict=True,
        )
        body = self._json(response)
        try:
            acks = [PushAck.from_dict(a) for a in body["acks"]]
        except (KeyError, TypeError) as e:
            raise RemoteRejectedError(f"Malformed push response: {e}") from e
        if len(acks) != len(items):
            raise RemoteRejectedError(
                f"Push response has {len(acks)} acks for {len(items)} items"
            )
        return acks

    async def pull_since(
        self,
        checkpoint: Optional[str],
        user_scope: str,
        limit: int = 200,
    ) -> PullPage:
        """GET one page of changes.

        Raises:
            RemoteUnavailableError: Transient failure
            RemoteRejectedError: Request refused or response malformed
        """
        params: Dict[str, Any] = {"scope": user_scope, "limit": limit}
        if checkpoint is not None:
            params["checkpoint"] = checkpoint
        response = await self._request("GET", "/sync/pull", params=params)
        body = self._json(response)
        if not isinstance(body, dict):
            raise RemoteRejectedError("Malformed pull response")
        return PullPage.from_dict(body)

    async def _request(
        self,
        method: str,
        path: str,
        allow_conflict: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._client is None:
            raise RemoteUnavailableError("Not connected")
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteUnavailableError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status >= 500 or status == 429:
            raise RemoteUnavailableError(
                f"{method} {path} returned {status}", details={"status": status}
            )
        if status == 409 and allow_conflict:
            return response
        if status >= 400:
            raise RemoteRejectedError(
                f"{method} {path} returned {status}",
                details={"status": status, "body": response.text[:500]},
            )
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteRejectedError(f"Response is not JSON: {e}") from e
