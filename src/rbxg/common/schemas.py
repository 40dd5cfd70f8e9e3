"""Response models served by the asset proxy.

The asset info document mirrors the shape of the public catalog API. The
economy details endpoint we read from does not provide every field, so the
missing ones are filled with fixed placeholder values.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class AssetBlock(BaseModel):
    audioDetails: Optional[dict[str, Any]] = None
    id: Optional[int] = None
    name: Optional[str] = None
    typeId: Optional[int] = None
    assetSubTypes: list[str] = Field(default_factory=list)
    assetGenres: list[str] = Field(default_factory=lambda: ["All"])
    ageGuidelines: Optional[dict[str, Any]] = None
    isEndorsed: bool = False
    description: Optional[str] = None
    duration: int = 0
    hasScripts: bool = False
    createdUtc: Optional[str] = None
    updatedUtc: Optional[str] = None
    creatingUniverseId: Optional[int] = None
    isAssetHashApproved: bool = True
    visibilityStatus: int = 0
    socialLinks: list[dict[str, Any]] = Field(default_factory=list)


class CreatorBlock(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    type: int = 2
    isVerifiedCreator: Optional[bool] = None
    latestGroupUpdaterUserId: Optional[int] = None
    latestGroupUpdaterUserName: Optional[str] = None


class VotingBlock(BaseModel):
    showVotes: bool = True
    upVotes: int = 0
    downVotes: int = 0
    canVote: bool = True
    userVote: Optional[bool] = None
    hasVoted: bool = False
    voteCount: int = 0
    upVotePercent: int = 0


class AssetInfo(BaseModel):
    asset: AssetBlock
    creator: CreatorBlock
    voting: VotingBlock = Field(default_factory=VotingBlock)


class AssetInfoBatch(BaseModel):
    data: list[AssetInfo] = Field(default_factory=list)


def format_asset_info(details: dict[str, Any]) -> dict[str, Any]:
    """Reshape raw economy asset details into the catalog asset document."""

    creator = details.get("Creator") or {}
    document = AssetInfo(
        asset=AssetBlock(
            id=details.get("AssetId"),
            name=details.get("Name"),
            typeId=details.get("AssetTypeId"),
            description=details.get("Description"),
            createdUtc=details.get("Created"),
            updatedUtc=details.get("Updated"),
        ),
        creator=CreatorBlock(
            id=creator.get("Id"),
            name=creator.get("Name"),
            type=1 if creator.get("CreatorType") == "User" else 2,
            isVerifiedCreator=creator.get("HasVerifiedBadge"),
        ),
    )
    return document.model_dump()
