from __future__ import annotations

import re

import pytest

from rbxg.proxy.errors import NotFoundError, UpstreamError
from rbxg.proxy.extractors import NO_ASSET_ID
from rbxg.proxy.service import relay_filename, relay_path
from tests.utils.upstream import ASSET_DELIVERY, CDN


VERSION_URL = f"{ASSET_DELIVERY}/v1/assetversionid/777"
LOCATION = f"{CDN}/b1e2c3d4?sig=abc&expires=9"
MODEL_XML = """<roblox>
  <Item class="MeshPart">
    <Content name="MeshId"><url>rbxassetid://1234567890</url></Content>
    <Content name="TextureID"><url>rbxassetid://98765432101</url></Content>
  </Item>
</roblox>"""
DECAL_XML = "<Content name=\"Texture\"><url>http://www.roblox.com/asset/?id=5550001</url></Content>"


def _descriptor(asset_type_id: int) -> dict:
    return {"location": LOCATION, "requestId": "upstream-request", "assetTypeId": asset_type_id, "IsCopyrightProtected": False}


def test_relay_path_encodes_like_uri_component() -> None:
    assert relay_path("https://c0.rbxcdn.com/a b?x=1&y=(2)") == (
        "/rbxm/https%3A%2F%2Fc0.rbxcdn.com%2Fa%20b%3Fx%3D1%26y%3D(2)"
    )


def test_relay_filename_uses_last_path_segment() -> None:
    assert relay_filename("https%3A%2F%2Fc0.rbxcdn.com%2Fhash") == "https%3A%2F%2Fc0.rbxcdn.com%2Fhash.rbxm"
    assert relay_filename("hash/part") == "part.rbxm"


@pytest.mark.asyncio
async def test_model_content_lists_every_asset_id(proxy, upstream) -> None:
    upstream.add(VERSION_URL, json=_descriptor(10))
    upstream.add(f"{CDN}/b1e2c3d4", text=MODEL_XML)

    result = await proxy.asset_version("777")

    assert result["assetId"] == "1234567890,98765432101"
    assert result["location"] == LOCATION
    assert result["IsCopyrightProtected"] is False
    assert result["rbxm"] == relay_path(LOCATION)
    assert re.fullmatch(r"638601530\d{9}", result["requestId"])


@pytest.mark.asyncio
async def test_decal_content_uses_decal_url(proxy, upstream) -> None:
    upstream.add(VERSION_URL, json=_descriptor(13))
    upstream.add(f"{CDN}/b1e2c3d4", text=DECAL_XML)

    result = await proxy.asset_version("777")

    assert result["assetId"] == "5550001"


@pytest.mark.asyncio
async def test_content_without_ids_reports_sentinel(proxy, upstream) -> None:
    upstream.add(VERSION_URL, json=_descriptor(4))
    upstream.add(f"{CDN}/b1e2c3d4", text="<roblox/>")

    result = await proxy.asset_version("777")

    assert result["assetId"] == NO_ASSET_ID


@pytest.mark.asyncio
async def test_cached_result_gets_fresh_request_id(proxy, upstream, monkeypatch) -> None:
    upstream.add(VERSION_URL, json=_descriptor(10))
    upstream.add(f"{CDN}/b1e2c3d4", text=MODEL_XML)
    counter = iter(range(1, 10))
    monkeypatch.setattr("rbxg.proxy.service.secrets.randbelow", lambda _bound: next(counter))

    first = await proxy.asset_version("777")
    second = await proxy.asset_version("777")

    assert first["requestId"] == "638601530000000001"
    assert second["requestId"] == "638601530000000002"
    assert {k: v for k, v in first.items() if k != "requestId"} == {
        k: v for k, v in second.items() if k != "requestId"
    }
    assert len(upstream.calls(VERSION_URL)) == 1
    assert "requestId" not in proxy.cache.get("assetversionid:777")


@pytest.mark.asyncio
async def test_unknown_version_is_not_found(proxy) -> None:
    with pytest.raises(NotFoundError):
        await proxy.asset_version("404")


@pytest.mark.asyncio
async def test_descriptor_without_location_fails(proxy, upstream) -> None:
    upstream.add(VERSION_URL, json={"errors": [{"code": 7, "message": "Moderated"}]})

    with pytest.raises(UpstreamError):
        await proxy.asset_version("777")


@pytest.mark.asyncio
async def test_content_fetch_failure_fails(proxy, upstream) -> None:
    upstream.add(VERSION_URL, json=_descriptor(10))
    upstream.add(f"{CDN}/b1e2c3d4", status_code=403)

    with pytest.raises(UpstreamError):
        await proxy.asset_version("777")
    assert proxy.cache.get("assetversionid:777") is None


@pytest.mark.asyncio
async def test_relay_downloads_decoded_location(proxy, upstream) -> None:
    upstream.add(f"{CDN}/b1e2c3d4", content=b"<roblox!binary")
    encoded = relay_path(LOCATION)[len("/rbxm/"):]

    payload = await proxy.relay_binary(encoded)

    assert payload.content == b"<roblox!binary"
    assert payload.media_type == "application/octet-stream"
    assert payload.filename == encoded.split("/")[-1] + ".rbxm"
    assert str(upstream.requests[-1].url) == LOCATION


@pytest.mark.asyncio
async def test_relay_failure_is_upstream_error(proxy) -> None:
    with pytest.raises(UpstreamError, match="Binary download failed"):
        await proxy.relay_binary("https%3A%2F%2Fc0.rbxcdn.com%2Fmissing")


@pytest.mark.asyncio
async def test_missing_content_is_server_error_not_404(proxy, upstream) -> None:
    upstream.add(VERSION_URL, json=_descriptor(10))

    with pytest.raises(UpstreamError) as excinfo:
        await proxy.asset_version("777")
    assert not isinstance(excinfo.value, NotFoundError)
    assert excinfo.value.status_code == 500
