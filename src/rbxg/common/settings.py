"""Application configuration for the RBXG asset proxy."""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


DEFAULT_INVENTORY_ASSET_TYPES = [1, 3, 4, 5, 9, 10, 13, 24, 40]


class ProxySettings(BaseSettings):
    """Runtime settings for the asset proxy and the fetch CLI."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    host: str = env_field("0.0.0.0", "RBXG_HOST")
    port: int = env_field(8000, "RBXG_PORT")

    thumbnails_base_url: str = env_field("https://thumbnails.roblox.com", "RBXG_THUMBNAILS_URL")
    economy_base_url: str = env_field("https://economy.roblox.com", "RBXG_ECONOMY_URL")
    asset_delivery_base_url: str = env_field("https://assetdelivery.roblox.com", "RBXG_ASSET_DELIVERY_URL")
    users_base_url: str = env_field("https://users.roblox.com", "RBXG_USERS_URL")
    inventory_base_url: str = env_field("https://inventory.roblox.com", "RBXG_INVENTORY_URL")
    http_timeout_seconds: float = env_field(30.0, "RBXG_HTTP_TIMEOUT")

    default_ttl_seconds: float = env_field(3600.0, "RBXG_CACHE_TTL")
    thumbnail_ttl_seconds: float = env_field(10.0, "RBXG_THUMBNAIL_TTL")
    asset_info_ttl_seconds: float = env_field(20.0, "RBXG_ASSET_INFO_TTL")
    cache_max_entries: Optional[int] = env_field(None, "RBXG_CACHE_MAX_ENTRIES")

    asset_info_timeout_seconds: float = env_field(5.0, "RBXG_ASSET_INFO_TIMEOUT")
    asset_info_retry_attempts: int = env_field(5, "RBXG_ASSET_INFO_RETRY_ATTEMPTS")
    asset_info_retry_base_seconds: float = env_field(1.0, "RBXG_ASSET_INFO_RETRY_BASE")
    max_asset_info_ids: int = env_field(10, "RBXG_MAX_ASSET_INFO_IDS")

    inventory_refresh_seconds: float = env_field(60.0, "RBXG_INVENTORY_REFRESH")
    inventory_page_size: int = env_field(100, "RBXG_INVENTORY_PAGE_SIZE")
    inventory_asset_types: Annotated[list[int], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_INVENTORY_ASSET_TYPES),
        validation_alias="RBXG_INVENTORY_ASSET_TYPES",
    )

    request_id_prefix: str = env_field("638601530", "RBXG_REQUEST_ID_PREFIX")

    log_level: str = env_field("INFO", "RBXG_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "RBXG_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "RBXG_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "RBXG_OTEL_SAMPLER_RATIO")

    @field_validator("inventory_asset_types", mode="before")
    @classmethod
    def _split_asset_types(cls, value):
        if isinstance(value, str):
            return [int(item.strip()) for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "thumbnails_base_url",
        "economy_base_url",
        "asset_delivery_base_url",
        "users_base_url",
        "inventory_base_url",
    )
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")
