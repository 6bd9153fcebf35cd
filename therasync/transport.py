"""
therasync — HTTP Transport.

httpx-based fetch and mutate collaborators for the therapy practice REST
API. Any object with the same two coroutines can stand in for it.

Usage:
    async with HttpTransport("http://localhost:3001/api/v1", api_key="...") as transport:
        client = SyncClient(transport.fetch, transport.mutate)
"""

from __future__ import annotations

from typing import Any

import httpx

from therasync import config
from therasync.exceptions import NetworkError, error_for_status
from therasync.keys import QueryKey, resource_for
from therasync.mutations.models import MutationKind, MutationRequest

__all__ = ["HttpTransport", "key_to_request"]


def key_to_request(key: QueryKey) -> tuple[str, dict[str, Any]]:
    """``("clients", "c1", "sessions")`` -> ``/clients/c1/sessions``.

    A trailing tuple of ``(name, value)`` pairs becomes the query string.
    """
    parts = list(key)
    query: dict[str, Any] = {}
    if parts and isinstance(parts[-1], tuple):
        for pair in parts.pop():
            name, value = pair
            query[str(name)] = list(value) if isinstance(value, tuple) else value
    path = "/" + "/".join(str(p) for p in parts)
    return path, query


class HttpTransport:
    """Async REST transport.

    Args:
        base_url: API root (default: ``THERASYNC_API_URL``)
        api_key: Bearer token (default: ``THERASYNC_API_KEY``)
        timeout: Request timeout in seconds
        transport: optional ``httpx`` transport (``httpx.MockTransport`` in tests)
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or config.API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.API_KEY
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else config.HTTP_TIMEOUT,
            headers=self._headers(),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"Connection error: {e}") from e
        if resp.status_code >= 400:
            try:
                body = resp.json()
                detail = body.get("message") or body.get("error") or resp.text
            except (ValueError, AttributeError):
                detail = resp.text
            raise error_for_status(resp.status_code, str(detail))
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            body = resp.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON response: {e}", resp.status_code) from e
        return self._unwrap(body)

    @staticmethod
    def _unwrap(body: Any) -> Any:
        """Strip the ``{"success": ..., "data": ...}`` envelope."""
        if isinstance(body, dict) and "success" in body and "data" in body:
            return body["data"]
        return body

    # ─── Collaborators ────────────────────────────────────────────

    async def fetch(self, key: QueryKey) -> Any:
        path, query = key_to_request(key)
        return await self._request("GET", path, params=query or None)

    async def mutate(self, request: MutationRequest) -> Any:
        resource = resource_for(request.entity_class)
        if request.kind is MutationKind.CREATE:
            return await self._request("POST", f"/{resource}", json=request.payload)
        if request.kind is MutationKind.UPDATE:
            return await self._request("PUT", f"/{resource}/{request.entity_id}", json=request.payload)
        return await self._request("DELETE", f"/{resource}/{request.entity_id}")

    # ─── Lifecycle ────────────────────────────────────────────────

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
