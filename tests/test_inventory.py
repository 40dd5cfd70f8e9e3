from __future__ import annotations

import httpx
import pytest
from hypothesis import given, strategies as st

from rbxg.common.settings import ProxySettings
from rbxg.proxy.inventory import merge_new_items, sort_by_created
from tests.utils.upstream import CDN, INVENTORY


USER_ID = "261"
PLACES_URL = f"{INVENTORY}/v2/users/{USER_ID}/inventory/9"
DECALS_URL = f"{INVENTORY}/v2/users/{USER_ID}/inventory/13"


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(inventory_asset_types=[9, 13])


def item(user_asset_id: int, created: str, **extra) -> dict:
    return {"userAssetId": user_asset_id, "assetId": user_asset_id * 10, "created": created, **extra}


def paged(pages: dict[str, dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[request.url.params.get("cursor", "")])

    return handler


def test_sort_puts_newest_first_and_undated_last() -> None:
    items = [
        item(1, "2020-01-01T00:00:00Z"),
        {"userAssetId": 2},
        item(3, "2023-06-01T12:00:00.1234567Z"),
        item(4, "2021-05-05T00:00:00.5+00:00"),
    ]
    assert [entry["userAssetId"] for entry in sort_by_created(items)] == [3, 4, 1, 2]


@given(
    existing=st.lists(st.integers(min_value=0, max_value=50), unique=True, max_size=20),
    page=st.lists(st.integers(min_value=0, max_value=50), max_size=30),
)
def test_merge_never_duplicates_user_asset_ids(existing: list[int], page: list[int]) -> None:
    known = [{"userAssetId": value} for value in existing]
    fresh = merge_new_items(known, [{"userAssetId": value} for value in page])

    ids = [entry["userAssetId"] for entry in known + fresh]
    assert len(ids) == len(set(ids))
    assert set(ids) == set(existing) | set(page)


@pytest.mark.asyncio
async def test_collects_all_pages_of_every_type(proxy, upstream) -> None:
    upstream.add_handler(
        PLACES_URL,
        paged(
            {
                "": {"data": [item(1, "2022-01-01T00:00:00Z")], "nextPageCursor": "page2"},
                "page2": {"data": [item(2, "2020-01-01T00:00:00Z")], "nextPageCursor": None},
            }
        ),
    )
    upstream.add(DECALS_URL, json={"data": [item(3, "2021-01-01T00:00:00Z", assetType=13, assetName="Sticker")]})

    items = await proxy.inventory(USER_ID)

    assert [entry["userAssetId"] for entry in items] == [1, 3, 2]
    first_page = upstream.calls(PLACES_URL)[0].url.params
    assert first_page["cursor"] == ""
    assert first_page["limit"] == "100"
    assert first_page["sortOrder"] == "Desc"
    assert upstream.calls(PLACES_URL)[1].url.params["cursor"] == "page2"


@pytest.mark.asyncio
async def test_decals_get_image_asset_id(proxy, upstream) -> None:
    location = f"{CDN}/decal-xml"
    upstream.add(PLACES_URL, json={"data": []})
    upstream.add(
        DECALS_URL,
        json={
            "data": [
                item(5, "2022-01-01T00:00:00Z", assetType=13, assetName="Decal", location=location),
                item(6, "2022-02-01T00:00:00Z", assetType=13, assetName="Decal"),
            ]
        },
    )
    upstream.add(location, text="<url>http://www.roblox.com/asset/?id=424242</url>")

    items = await proxy.inventory(USER_ID)

    by_id = {entry["userAssetId"]: entry for entry in items}
    assert by_id[5]["assetId"] == "424242"
    assert by_id[6]["assetId"] == 60


@pytest.mark.asyncio
async def test_failed_decal_fetch_keeps_item(proxy, upstream) -> None:
    upstream.add(PLACES_URL, json={"data": []})
    upstream.add(
        DECALS_URL,
        json={"data": [item(5, "2022-01-01T00:00:00Z", assetType=13, assetName="Decal", location=f"{CDN}/gone")]},
    )

    items = await proxy.inventory(USER_ID)

    assert items == [item(5, "2022-01-01T00:00:00Z", assetType=13, assetName="Decal", location=f"{CDN}/gone")]


@pytest.mark.asyncio
async def test_page_failure_stops_only_that_type(proxy, upstream) -> None:
    upstream.add_sequence(
        PLACES_URL,
        [
            httpx.Response(200, json={"data": [item(1, "2022-01-01T00:00:00Z")], "nextPageCursor": "next"}),
            httpx.Response(500),
        ],
    )
    upstream.add(DECALS_URL, json={"data": [item(2, "2023-01-01T00:00:00Z")]})

    items = await proxy.inventory(USER_ID)

    assert [entry["userAssetId"] for entry in items] == [2, 1]
    assert len(upstream.calls(PLACES_URL)) == 2


@pytest.mark.asyncio
async def test_refreshes_at_most_once_per_minute(proxy, upstream, clock) -> None:
    upstream.add(PLACES_URL, json={"data": [item(1, "2022-01-01T00:00:00Z")]})
    upstream.add(DECALS_URL, json={"data": []})

    first = await proxy.inventory(USER_ID)
    requests_after_refresh = len(upstream.requests)
    clock.advance(60)
    second = await proxy.inventory(USER_ID)
    assert second == first
    assert len(upstream.requests) == requests_after_refresh

    clock.advance(1)
    await proxy.inventory(USER_ID)
    assert len(upstream.calls(PLACES_URL)) == 2


@pytest.mark.asyncio
async def test_refresh_accumulates_new_items(proxy, upstream, clock) -> None:
    upstream.add(PLACES_URL, json={"data": [item(1, "2022-01-01T00:00:00Z")]})
    upstream.add(DECALS_URL, json={"data": []})
    assert len(await proxy.inventory(USER_ID)) == 1

    upstream.add(PLACES_URL, json={"data": [item(7, "2024-01-01T00:00:00Z"), item(1, "2022-01-01T00:00:00Z")]})
    clock.advance(61)
    items = await proxy.inventory(USER_ID)

    assert [entry["userAssetId"] for entry in items] == [7, 1]
    record = proxy.cache.get(f"inventory:{USER_ID}")
    assert record["lastUpdated"] == clock.now
    assert [entry["userAssetId"] for entry in record["data"]] == [7, 1]


@pytest.mark.asyncio
async def test_items_survive_upstream_outage(proxy, upstream, clock) -> None:
    upstream.add(PLACES_URL, json={"data": [item(1, "2022-01-01T00:00:00Z")]})
    upstream.add(DECALS_URL, json={"data": []})
    await proxy.inventory(USER_ID)

    upstream.add(PLACES_URL, status_code=503)
    upstream.add(DECALS_URL, status_code=503)
    clock.advance(120)

    assert [entry["userAssetId"] for entry in await proxy.inventory(USER_ID)] == [1]


@pytest.mark.asyncio
async def test_returned_list_is_detached_from_cache(proxy, upstream) -> None:
    upstream.add(PLACES_URL, json={"data": [item(1, "2022-01-01T00:00:00Z")]})
    upstream.add(DECALS_URL, json={"data": []})

    items = await proxy.inventory(USER_ID)
    items.clear()

    assert len(proxy.cache.get(f"inventory:{USER_ID}")["data"]) == 1
    assert len(await proxy.inventory(USER_ID)) == 1
