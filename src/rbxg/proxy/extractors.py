"""Pull embedded asset ids out of downloaded asset content."""

from __future__ import annotations

import re
from typing import Optional

NO_ASSET_ID = "No assetId found"
DECAL_ASSET_TYPE = 13

ASSET_ID_PATTERN = re.compile(r"rbxassetid://(\d{10,16})")
DECAL_URL_PATTERN = re.compile(r"<url>http://www\.roblox\.com/asset/\?id=(\d+)</url>")


def extract_asset_ids(content: str) -> list[str]:
    """Return every ``rbxassetid://`` id in order of appearance."""
    return ASSET_ID_PATTERN.findall(content)


def extract_decal_asset_id(content: str) -> Optional[str]:
    """Return the image id referenced by a decal's ``<url>`` tag, if any."""
    match = DECAL_URL_PATTERN.search(content)
    return match.group(1) if match else None


def describe_asset_ids(content: str, asset_type_id: Optional[int]) -> str:
    if asset_type_id == DECAL_ASSET_TYPE:
        return extract_decal_asset_id(content) or NO_ASSET_ID
    asset_ids = extract_asset_ids(content)
    return ",".join(asset_ids) if asset_ids else NO_ASSET_ID
