from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from rbxg.common.settings import ProxySettings
from rbxg.proxy.cache import CacheStore
from rbxg.proxy.service import ProxyService
from rbxg.proxy.upstream import UpstreamClient
from tests.utils.upstream import FakeClock, UpstreamStub


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(asset_info_retry_base_seconds=0.0, asset_info_timeout_seconds=0.2)


@pytest_asyncio.fixture
async def http_client(upstream: UpstreamStub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest_asyncio.fixture
async def proxy(settings: ProxySettings, http_client: httpx.AsyncClient, clock: FakeClock):
    cache = CacheStore(settings.default_ttl_seconds, clock=clock)
    service = ProxyService(settings, cache, UpstreamClient(settings, http_client))
    yield service
    await service.close()
