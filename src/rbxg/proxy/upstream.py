"""HTTP access to the upstream Roblox web APIs."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

import httpx
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ProxySettings
from .errors import NotFoundError, RateLimitedError, UpstreamError, UpstreamTimeoutError


LOGGER = structlog.get_logger("rbxg.upstream")

UPSTREAM_REQUESTS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_upstream_requests_total", "Requests issued to upstream APIs")
)
UPSTREAM_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_upstream_errors_total", "Upstream requests that failed or returned an error status")
)
UPSTREAM_RETRIES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_upstream_retries_total", "Upstream requests retried after a 429 response")
)

T = TypeVar("T")


def upstream_host(url: str) -> str:
    try:
        return httpx.URL(url).host or "unknown"
    except httpx.InvalidURL:
        return "invalid"


class UpstreamClient:
    """Thin wrapper over ``httpx.AsyncClient`` that knows the upstream URL layout."""

    def __init__(self, settings: ProxySettings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client

    def thumbnail_url(self) -> str:
        return f"{self._settings.thumbnails_base_url}/v1/assets"

    def asset_details_url(self, asset_id: str) -> str:
        return f"{self._settings.economy_base_url}/v2/assets/{asset_id}/details"

    def asset_version_url(self, version_id: str) -> str:
        return f"{self._settings.asset_delivery_base_url}/v1/assetversionid/{version_id}"

    def user_url(self, user_id: str) -> str:
        return f"{self._settings.users_base_url}/v1/users/{user_id}"

    def inventory_url(self, user_id: str, asset_type: int) -> str:
        return f"{self._settings.inventory_base_url}/v2/users/{user_id}/inventory/{asset_type}"

    async def fetch(self, url: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        host = upstream_host(url)
        UPSTREAM_REQUESTS_COUNTER.inc(host=host)
        try:
            response = await self._http.get(url, params=params, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            UPSTREAM_ERRORS_COUNTER.inc(host=host, status="transport")
            LOGGER.warning("upstream_transport_error", url=url, error=str(exc))
            raise UpstreamError(f"Upstream request failed: {exc.__class__.__name__}") from exc
        if response.is_error:
            UPSTREAM_ERRORS_COUNTER.inc(host=host, status=response.status_code)
            status = response.status_code
            LOGGER.warning("upstream_error_status", url=url, status=status)
            if status == 404:
                raise NotFoundError("Upstream resource not found")
            if status == 429:
                raise RateLimitedError(upstream_status=status)
            raise UpstreamError(f"Upstream returned {status}", upstream_status=status)
        return response

    async def get_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Any:
        response = await self.fetch(url, params=params)
        try:
            return response.json()
        except ValueError as exc:
            UPSTREAM_ERRORS_COUNTER.inc(host=upstream_host(url), status="invalid_json")
            raise UpstreamError("Upstream returned invalid JSON") from exc

    async def get_text(self, url: str) -> str:
        response = await self.fetch(url)
        return response.text

    async def get_bytes(self, url: str) -> tuple[bytes, Optional[str]]:
        response = await self.fetch(url)
        return response.content, response.headers.get("content-type")

    async def get_json_with_retry(
        self,
        url: str,
        *,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ) -> Any:
        """GET JSON, retrying with exponential backoff only when rate limited."""

        attempts = max(1, attempts if attempts is not None else self._settings.asset_info_retry_attempts)
        delay = max(0.0, base_delay if base_delay is not None else self._settings.asset_info_retry_base_seconds)
        for attempt in range(1, attempts + 1):
            try:
                return await self.get_json(url)
            except RateLimitedError:
                if attempt >= attempts:
                    LOGGER.error("upstream_retries_exhausted", url=url, attempts=attempts)
                    raise
                UPSTREAM_RETRIES_COUNTER.inc(host=upstream_host(url))
                LOGGER.warning("upstream_rate_limited", url=url, attempt=attempt, retry_in=delay)
                if delay:
                    await asyncio.sleep(delay)
                delay *= 2
        raise RuntimeError("Retry loop exited unexpectedly")


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """Await ``awaitable`` but give up after ``seconds``."""

    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise UpstreamTimeoutError(f"Upstream request timed out after {seconds}s") from exc
