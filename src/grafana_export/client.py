"""
Async HTTP client for the Grafana REST API.

All endpoints use: GET <grafana_url>/api/<path>
Authentication: Authorization: Bearer <token>

Retries are decided by the caller through ``EndpointCategory``: ordinary
endpoints get a single attempt, nested-folder listings get three attempts
with a fixed delay and treat 404 as "no children".

All fetches raise ``GrafanaAPIError`` once the attempts are exhausted.
"""
from __future__ import annotations

import asyncio
import enum
import time
import typing
from typing import Any, Optional

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError

from grafana_export.config import Settings

log = structlog.get_logger(__name__)

RETRY_DELAY_SECONDS = 0.5


class EndpointCategory(enum.Enum):
    DEFAULT = "default"
    CHILDREN = "children"


_MAX_ATTEMPTS = {
    EndpointCategory.DEFAULT: 1,
    EndpointCategory.CHILDREN: 3,
}


class GrafanaAPIError(Exception):
    """Raised for non-200 responses, transport failures and undecodable bodies.

    ``status_code`` is ``None`` when no usable HTTP response was received.
    """

    def __init__(self, status_code: Optional[int], message: str) -> None:
        self.status_code = status_code
        if status_code is None:
            super().__init__(f"Grafana API error: {message}")
        else:
            super().__init__(f"Grafana API error {status_code}: {message}")


def _expects_list(shape: Any) -> bool:
    return shape is list or typing.get_origin(shape) is list


class GrafanaClient:
    """Async context-manager wrapper around the Grafana HTTP API."""

    def __init__(self, settings: Settings, retry_delay: float = RETRY_DELAY_SECONDS) -> None:
        self._settings = settings
        self._base_url = settings.grafana_url.rstrip("/") + "/api/"
        self._headers = {
            "Authorization": f"Bearer {settings.api_token}",
            "Accept": "application/json",
        }
        self._retry_delay = retry_delay
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "GrafanaClient":
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            verify=self._settings.ssl_verify,
            timeout=self._settings.timeout,
        )
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client_or_raise(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GrafanaClient must be used as an async context manager")
        return self._client

    async def _attempt(
        self,
        path: str,
        adapter: TypeAdapter,
        expects_list: bool,
        category: EndpointCategory,
        params: Optional[dict[str, Any]],
    ) -> Any:
        client = self._client_or_raise()
        t0 = time.monotonic()
        try:
            response = await client.get(path, params=params)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("grafana.transport_error", path=path, error=str(exc))
            raise GrafanaAPIError(None, f"request to {path} failed: {exc}") from exc
        elapsed = round((time.monotonic() - t0) * 1000)

        log.info(
            "grafana.api_call",
            method="GET",
            path=path,
            status=response.status_code,
            elapsed_ms=elapsed,
        )

        if response.status_code == 404 and category is EndpointCategory.CHILDREN:
            return self._decode_empty(adapter, path)
        if response.status_code == 401:
            raise GrafanaAPIError(401, "Unauthorized — check your API token")
        if response.status_code == 403:
            raise GrafanaAPIError(403, "Forbidden — token lacks permission for this operation")
        if response.status_code == 404:
            raise GrafanaAPIError(404, f"Not found: {path}")
        if response.status_code != 200:
            raise GrafanaAPIError(response.status_code, response.text[:500])

        body = response.content.strip()
        if expects_list and body in (b"", b"[]"):
            return self._decode_empty(adapter, path)
        if not body:
            raise GrafanaAPIError(None, f"empty response body from {path}")

        try:
            return adapter.validate_json(body)
        except ValidationError as exc:
            preview = response.text[:500]
            raise GrafanaAPIError(None, f"JSON decode error for {path}: {exc} (body: {preview})") from exc

    @staticmethod
    def _decode_empty(adapter: TypeAdapter, path: str) -> Any:
        try:
            return adapter.validate_python([])
        except ValidationError as exc:
            raise GrafanaAPIError(None, f"unexpected empty result for {path}") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(
        self,
        path: str,
        shape: Any = Any,
        category: EndpointCategory = EndpointCategory.DEFAULT,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """GET *path* and decode the body into *shape*.

        *shape* is anything a pydantic ``TypeAdapter`` accepts, e.g.
        ``list[Folder]`` or ``dict[str, Any]``; the default returns raw JSON.
        """
        adapter = TypeAdapter(shape)
        expects_list = _expects_list(shape)
        max_attempts = _MAX_ATTEMPTS[category]

        attempt = 1
        while True:
            try:
                return await self._attempt(path, adapter, expects_list, category, params)
            except GrafanaAPIError:
                if attempt >= max_attempts:
                    raise
            attempt += 1
            log.info("grafana.retry", path=path, attempt=attempt, max_attempts=max_attempts)
            await asyncio.sleep(self._retry_delay)

    async def health(self) -> dict[str, Any]:
        """Return Grafana's health payload (version, database status)."""
        return await self.fetch("health", dict[str, Any])
