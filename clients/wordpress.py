"""WordPress REST client (``/wp-json/wp/v2``) with application-password auth."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from clients.base import PostPayload, PublishResult, RemoteActionClient
from core.errors import RemoteActionError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
_GONE_STATUS = frozenset({404, 410})


class WordPressClient(RemoteActionClient):
    def __init__(
        self,
        base_url: str,
        username: str,
        app_password: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = base_url.rstrip("/") + "/wp-json/wp/v2"
        self._auth = httpx.BasicAuth(username, app_password)
        self._timeout = timeout
        self._transport = transport

    async def publish(self, payload: PostPayload, key: str | None = None) -> PublishResult:
        """Create a post. *key* becomes the slug, so a retry after a lost
        response finds the post instead of creating a second one."""
        body = payload.model_dump(exclude_none=True, mode="json")
        if key:
            existing = await self._find_by_slug(key)
            if existing is not None:
                logger.info("Post already exists for key", extra={"key": key, "remote_id": existing["id"]})
                return PublishResult(remote_id=str(existing["id"]), link=existing.get("link"))
            body["slug"] = key
        data = await self._request("POST", "/posts", json=body)
        return PublishResult(remote_id=str(data["id"]), link=data.get("link"))

    async def publish_existing(self, remote_id: str) -> None:
        await self._request("POST", f"/posts/{remote_id}", json={"status": "publish"})

    async def unpublish(self, remote_id: str) -> None:
        await self._request("POST", f"/posts/{remote_id}", json={"status": "draft"})

    async def delete(self, remote_id: str) -> None:
        try:
            await self._request("DELETE", f"/posts/{remote_id}")
        except RemoteActionError as e:
            if e.status_code in _GONE_STATUS:
                logger.info("Post already gone", extra={"remote_id": remote_id})
                return
            raise

    async def update_metadata(self, remote_id: str, fields: dict[str, Any]) -> None:
        await self._request("POST", f"/posts/{remote_id}", json=fields)

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _find_by_slug(self, slug: str) -> dict | None:
        found = await self._request(
            "GET", "/posts", params={"slug": slug, "status": "any", "context": "edit"},
        )
        return found[0] if found else None

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                auth=self._auth, timeout=self._timeout, transport=self._transport,
            ) as client:
                response = await client.request(method, self.api_url + path, json=json, params=params)
        except httpx.TransportError as e:
            raise RemoteActionError(f"{method} {path}: {e}", transient=True) from e

        if response.is_success:
            return response.json() if response.content else {}

        status = response.status_code
        raise RemoteActionError(
            f"{method} {path}: HTTP {status} {_error_message(response)}",
            transient=status in _TRANSIENT_STATUS or status >= 500,
            status_code=status,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("code") or "")
    return ""
