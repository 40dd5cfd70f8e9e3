"""Endpoint handlers composing the cache, the upstream client and the extractors."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Coroutine, Optional
from urllib.parse import quote, unquote

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import format_asset_info
from ..common.settings import ProxySettings
from .cache import CacheStore
from .errors import (
    BadRequestError,
    NotFoundError,
    ProxyError,
    RateLimitedError,
    UpstreamError,
    UpstreamTimeoutError,
)
from .extractors import describe_asset_ids
from .inventory import InventoryAggregator
from .upstream import UpstreamClient, with_timeout


LOGGER = structlog.get_logger("rbxg.proxy")
TRACER = trace.get_tracer("rbxg.proxy")

BACKGROUND_REFRESH_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_background_refreshes_total", "Background thumbnail revalidations started")
)
BACKGROUND_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_background_refresh_failures_total", "Background thumbnail revalidations that failed")
)
ASSET_DETAIL_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_asset_detail_failures_total", "Asset detail lookups that produced an error marker")
)

PNG_MEDIA_TYPE = "image/png"
BINARY_MEDIA_TYPE = "application/octet-stream"
BINARY_EXTENSION = ".rbxm"
# Characters encodeURIComponent leaves untouched.
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class BinaryPayload:
    content: bytes
    media_type: str
    filename: Optional[str] = None


def thumbnail_cache_key(asset_id: str) -> str:
    return f"thumbnail:{asset_id}"


def asset_info_cache_key(asset_id: str) -> str:
    return f"assetinfo:{asset_id}"


def asset_info_batch_cache_key(asset_ids: list[str]) -> str:
    return f"assetinfoz:{','.join(asset_ids)}"


def asset_version_cache_key(version_id: str) -> str:
    return f"assetversionid:{version_id}"


def users_cache_key(raw_user_ids: str) -> str:
    return f"users:{raw_user_ids}"


def relay_path(location: str) -> str:
    return f"/rbxm/{quote(location, safe=_URI_COMPONENT_SAFE)}"


def relay_filename(encoded_location: str) -> str:
    return encoded_location.split("/")[-1] + BINARY_EXTENSION


def is_error_marker(details: Any) -> bool:
    return isinstance(details, dict) and details.get("error") is True


class ProxyService:
    """All proxy operations, sharing one cache and one upstream client."""

    def __init__(
        self,
        settings: ProxySettings,
        cache: CacheStore,
        upstream: UpstreamClient,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.upstream = upstream
        self.inventory_aggregator = InventoryAggregator(settings, cache, upstream)
        self._background: set[asyncio.Task] = set()

    @classmethod
    def build(cls, settings: ProxySettings, http_client: httpx.AsyncClient) -> "ProxyService":
        cache = CacheStore(settings.default_ttl_seconds, max_entries=settings.cache_max_entries)
        return cls(settings, cache, UpstreamClient(settings, http_client))

    # Background work -------------------------------------------------

    def spawn_background(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            BACKGROUND_FAILURES_COUNTER.inc()
            LOGGER.error("background_task_failed", task=task.get_name(), error=str(exc))

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background)

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.drain_background()

    # Thumbnails ------------------------------------------------------

    async def thumbnail(self, asset_id: str) -> BinaryPayload:
        cache_key = thumbnail_cache_key(asset_id)
        with TRACER.start_as_current_span("proxy.thumbnail", attributes={"rbxg.asset_id": asset_id}) as span:
            cached = self.cache.get(cache_key, self.settings.thumbnail_ttl_seconds)
            if cached is not None:
                span.set_attribute("rbxg.cache_hit", True)
                LOGGER.info("cache_hit", cache_key=cache_key, bytes=len(cached))
                BACKGROUND_REFRESH_COUNTER.inc()
                self.spawn_background(self._refresh_thumbnail(asset_id), name=f"refresh:{cache_key}")
                return BinaryPayload(cached, PNG_MEDIA_TYPE)

            span.set_attribute("rbxg.cache_hit", False)
            LOGGER.info("cache_miss", cache_key=cache_key)
            content = await self._fetch_thumbnail(asset_id)
            return BinaryPayload(content, PNG_MEDIA_TYPE)

    async def _fetch_thumbnail(self, asset_id: str) -> bytes:
        params = {
            "assetIds": asset_id,
            "returnPolicy": "PlaceHolder",
            "size": "512x512",
            "format": "Png",
            "isCircular": "false",
        }
        try:
            resolution = await self.upstream.get_json(self.upstream.thumbnail_url(), params=params)
        except NotFoundError as exc:
            raise UpstreamError("Thumbnail resolution failed") from exc

        entries = resolution.get("data") if isinstance(resolution, dict) else None
        image_url = entries[0].get("imageUrl") if entries else None
        if not image_url:
            raise NotFoundError("Image not found")

        try:
            content, _ = await self.upstream.get_bytes(image_url)
        except NotFoundError as exc:
            raise UpstreamError("Thumbnail image download failed") from exc
        self.cache.set(thumbnail_cache_key(asset_id), content, self.settings.thumbnail_ttl_seconds)
        return content

    async def _refresh_thumbnail(self, asset_id: str) -> None:
        try:
            await self._fetch_thumbnail(asset_id)
        except ProxyError as exc:
            BACKGROUND_FAILURES_COUNTER.inc()
            LOGGER.warning("thumbnail_refresh_failed", asset_id=asset_id, error=exc.detail)
            return
        LOGGER.debug("thumbnail_refreshed", asset_id=asset_id)

    # Asset info ------------------------------------------------------

    async def fetch_asset_details(self, asset_id: str) -> dict[str, Any]:
        """Raw economy details for one asset, or an error marker on any failure."""

        cache_key = asset_info_cache_key(asset_id)
        cached = self.cache.get(cache_key, self.settings.asset_info_ttl_seconds)
        if cached is not None:
            return cached

        try:
            details = await with_timeout(
                self.upstream.get_json_with_retry(self.upstream.asset_details_url(asset_id)),
                self.settings.asset_info_timeout_seconds,
            )
            if not isinstance(details, dict):
                raise UpstreamError("Unexpected asset details payload")
        except ProxyError as exc:
            reason = _failure_reason(exc)
            ASSET_DETAIL_FAILURES_COUNTER.inc(reason=reason)
            LOGGER.error("asset_details_failed", asset_id=asset_id, reason=reason, error=exc.detail)
            return {"error": True, "assetId": asset_id, "reason": reason}

        self.cache.set(cache_key, details, self.settings.asset_info_ttl_seconds)
        return details

    async def asset_info(self, asset_id: str) -> dict[str, Any]:
        with TRACER.start_as_current_span("proxy.asset_info", attributes={"rbxg.asset_id": asset_id}):
            details = await self.fetch_asset_details(asset_id)
            if is_error_marker(details):
                if details["reason"] == "not_found":
                    raise NotFoundError("Asset not found")
                raise UpstreamError(f"Asset lookup failed: {details['reason']}")
            return format_asset_info(details)

    async def asset_info_batch(self, raw_asset_ids: str) -> dict[str, Any]:
        segments = raw_asset_ids.split(",")
        limit = self.settings.max_asset_info_ids
        if len(segments) > limit:
            raise BadRequestError(f"Too many asset IDs. Maximum allowed is {limit}")

        # Empty segments count toward the limit and the key but are never fetched.
        asset_ids = [asset_id for asset_id in segments if asset_id]
        cache_key = asset_info_batch_cache_key(segments)
        with TRACER.start_as_current_span("proxy.asset_info_batch", attributes={"rbxg.asset_count": len(asset_ids)}):
            cached = self.cache.get(cache_key, self.settings.asset_info_ttl_seconds)
            if cached is not None:
                LOGGER.info("cache_hit", cache_key=cache_key)
                return cached

            results = await asyncio.gather(*(self.fetch_asset_details(asset_id) for asset_id in asset_ids))
            payload = {"data": [format_asset_info(details) for details in results if not is_error_marker(details)]}
            self.cache.set(cache_key, payload, self.settings.asset_info_ttl_seconds)
            LOGGER.info(
                "asset_info_batch_resolved",
                requested=len(asset_ids),
                resolved=len(payload["data"]),
            )
            return payload

    # Asset versions --------------------------------------------------

    async def asset_version(self, version_id: str) -> dict[str, Any]:
        cache_key = asset_version_cache_key(version_id)
        with TRACER.start_as_current_span("proxy.asset_version", attributes={"rbxg.version_id": version_id}):
            result = self.cache.get(cache_key)
            if result is None:
                result = await self._resolve_asset_version(version_id)
                self.cache.set(cache_key, result)
            else:
                LOGGER.info("cache_hit", cache_key=cache_key)
            return {**result, "requestId": self.new_request_id()}

    async def _resolve_asset_version(self, version_id: str) -> dict[str, Any]:
        descriptor = await self.upstream.get_json(self.upstream.asset_version_url(version_id))
        location = descriptor.get("location") if isinstance(descriptor, dict) else None
        if not location:
            raise UpstreamError("Asset version has no content location")

        try:
            content = await self.upstream.get_text(location)
        except NotFoundError as exc:
            raise UpstreamError("Asset version content download failed") from exc
        result = dict(descriptor)
        result.pop("requestId", None)
        result["rbxm"] = relay_path(location)
        result["assetId"] = describe_asset_ids(content, descriptor.get("assetTypeId"))
        return result

    def new_request_id(self) -> str:
        return f"{self.settings.request_id_prefix}{secrets.randbelow(1_000_000_000):09d}"

    # Binary relay ----------------------------------------------------

    async def relay_binary(self, encoded_location: str) -> BinaryPayload:
        location = unquote(encoded_location)
        with TRACER.start_as_current_span("proxy.relay_binary"):
            try:
                content, _ = await self.upstream.get_bytes(location)
            except ProxyError as exc:
                LOGGER.error("binary_relay_failed", location=location, error=exc.detail)
                raise UpstreamError("Binary download failed") from exc
            return BinaryPayload(content, BINARY_MEDIA_TYPE, filename=relay_filename(encoded_location))

    # Users -----------------------------------------------------------

    async def users(self, raw_user_ids: str) -> list[dict[str, Any]]:
        cache_key = users_cache_key(raw_user_ids)
        with TRACER.start_as_current_span("proxy.users"):
            cached = self.cache.get(cache_key)
            if cached is not None:
                LOGGER.info("cache_hit", cache_key=cache_key)
                return cached

            user_ids = [user_id for user_id in raw_user_ids.split(",") if user_id]
            results = await asyncio.gather(
                *(self.upstream.get_json(self.upstream.user_url(user_id)) for user_id in user_ids),
                return_exceptions=True,
            )
            users: list[dict[str, Any]] = []
            for user_id, result in zip(user_ids, results):
                if isinstance(result, Exception):
                    LOGGER.warning("user_lookup_failed", user_id=user_id, error=str(result))
                    continue
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if result:
                    users.append(result)
            self.cache.set(cache_key, users)
            return users

    # Inventory -------------------------------------------------------

    async def inventory(self, user_id: str) -> list[dict[str, Any]]:
        return await self.inventory_aggregator.collect(user_id)


def _failure_reason(exc: ProxyError) -> str:
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, UpstreamTimeoutError):
        return "timeout"
    if isinstance(exc, RateLimitedError):
        return "rate_limited"
    return "upstream_error"
