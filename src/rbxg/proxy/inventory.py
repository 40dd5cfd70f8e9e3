"""Per-user inventory aggregation across asset types and result pages."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ProxySettings
from .cache import CacheStore
from .errors import ProxyError, UpstreamError
from .extractors import DECAL_ASSET_TYPE, extract_decal_asset_id
from .upstream import UpstreamClient


LOGGER = structlog.get_logger("rbxg.inventory")
TRACER = trace.get_tracer("rbxg.inventory")

INVENTORY_REFRESH_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_inventory_refreshes_total", "Inventory refresh cycles performed")
)
INVENTORY_PAGE_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_inventory_page_failures_total", "Inventory pages that failed and ended pagination for an asset type")
)

_FRACTION_RE = re.compile(r"\.(\d+)")


def inventory_cache_key(user_id: str) -> str:
    return f"inventory:{user_id}"


def _created_timestamp(item: dict[str, Any]) -> float:
    value = item.get("created")
    if not isinstance(value, str) or not value:
        return float("-inf")
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    # Upstream sends up to seven fractional digits; datetime accepts six.
    candidate = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), candidate, count=1)
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def sort_by_created(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Newest first; items without a usable ``created`` go last."""
    return sorted(items, key=_created_timestamp, reverse=True)


def merge_new_items(existing: list[dict[str, Any]], page: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return the items of ``page`` whose ``userAssetId`` is not already known."""

    seen = {item.get("userAssetId") for item in existing}
    fresh: list[dict[str, Any]] = []
    for item in page:
        user_asset_id = item.get("userAssetId")
        if user_asset_id in seen:
            continue
        seen.add(user_asset_id)
        fresh.append(item)
    return fresh


class InventoryAggregator:
    """Accumulates a user's inventory in the cache and refreshes it at most once per interval."""

    def __init__(self, settings: ProxySettings, cache: CacheStore, upstream: UpstreamClient) -> None:
        self._settings = settings
        self._cache = cache
        self._upstream = upstream

    async def collect(self, user_id: str) -> list[dict[str, Any]]:
        cache_key = inventory_cache_key(user_id)
        record = self._cache.get(cache_key)
        items: list[dict[str, Any]] = list(record["data"]) if record else []

        now = self._cache.now()
        if record and now - record["lastUpdated"] <= self._settings.inventory_refresh_seconds:
            LOGGER.debug("inventory_served_from_cache", user_id=user_id, items=len(items))
            return items

        with TRACER.start_as_current_span("inventory.refresh", attributes={"rbxg.user_id": user_id}) as span:
            INVENTORY_REFRESH_COUNTER.inc()
            for asset_type in self._settings.inventory_asset_types:
                items = await self._collect_asset_type(user_id, asset_type, items)
            items = sort_by_created(items)
            self._cache.set(cache_key, {"data": items, "lastUpdated": now})
            span.set_attribute("rbxg.inventory.items", len(items))
        LOGGER.info("inventory_refreshed", user_id=user_id, items=len(items))
        return list(items)

    async def _collect_asset_type(
        self,
        user_id: str,
        asset_type: int,
        items: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        url = self._upstream.inventory_url(user_id, asset_type)
        cursor: Optional[str] = None
        while True:
            params = {
                "cursor": cursor or "",
                "limit": self._settings.inventory_page_size,
                "sortOrder": "Desc",
            }
            try:
                page = await self._upstream.get_json(url, params=params)
                if not isinstance(page, dict):
                    raise UpstreamError("Unexpected inventory page payload")
            except ProxyError as exc:
                INVENTORY_PAGE_FAILURES_COUNTER.inc(asset_type=asset_type)
                LOGGER.error(
                    "inventory_page_failed",
                    user_id=user_id,
                    asset_type=asset_type,
                    cursor=cursor,
                    error=str(exc),
                )
                return items

            fresh = merge_new_items(items, page.get("data") or [])
            if asset_type == DECAL_ASSET_TYPE:
                fresh = list(await asyncio.gather(*(self._attach_decal_image(item) for item in fresh)))
            items = fresh + items

            cursor = page.get("nextPageCursor")
            if not cursor:
                return items

    async def _attach_decal_image(self, item: dict[str, Any]) -> dict[str, Any]:
        if item.get("assetType") != DECAL_ASSET_TYPE or item.get("assetName") != "Decal":
            return item
        location = item.get("location")
        if not location:
            LOGGER.warning("decal_location_missing", user_asset_id=item.get("userAssetId"))
            return item
        try:
            content = await self._upstream.get_text(location)
        except ProxyError as exc:
            LOGGER.error("decal_content_failed", user_asset_id=item.get("userAssetId"), error=str(exc))
            return item
        asset_id = extract_decal_asset_id(content)
        if asset_id:
            item["assetId"] = asset_id
        return item
