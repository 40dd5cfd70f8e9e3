"""FastAPI application exposing the cached asset proxy endpoints."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from structlog.contextvars import bound_contextvars

from ..common.metrics import GLOBAL_REGISTRY, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import ProxySettings
from .errors import ProxyError
from .service import ProxyService


LOGGER = structlog.get_logger("rbxg.proxy.app")

TOTAL_ENTRIES_GAUGE = GLOBAL_REGISTRY.register(Gauge("rbxg_cache_entries", "Entries held in the cache"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "rbxg_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Proxy request latency",
    )
)

RELAY_PREFIX = "/rbxm/"
SLOW_REQUEST_SECONDS = 1.0

LANDING_PAGE = """<!doctype html>
<html>
<head><title>RBXG APIs</title></head>
<body>
<h1>RBXG APIs</h1>
<ul>
  <li><strong>Thumbnail API:</strong> <a href="/asset/1818">/asset/{assetId}</a></li>
  <li><strong>Asset Info API:</strong> <a href="/assetinfo/1818">/assetinfo/{assetId}</a></li>
  <li><strong>Multiple Asset Info API:</strong> <a href="/assetinfoz/1818,1819,1820">/assetinfoz/{assetId1,assetId2,assetId3,...}</a> (max 10 IDs)</li>
  <li><strong>Asset Version ID API:</strong> <a href="/assetversionid/1818">/assetversionid/{versionId}</a></li>
  <li><strong>RBXM Download for assetversionid:</strong> <a href="/rbxm/1818">/rbxm/{id}</a></li>
  <li><strong>Users API:</strong> <a href="/users/1,2,3">/users/{userId1,userId2,...}</a></li>
  <li><strong>Inventory API:</strong> <a href="/inventory/1">/inventory/{userId}</a></li>
</ul>
<p>Replace {assetId}, {versionId}, {id}, {userId} with actual ids.</p>
</body>
</html>
"""


def get_service(request: Request) -> ProxyService:
    return request.app.state.proxy  # type: ignore[attr-defined]


def raw_relay_location(request: Request, fallback: str) -> str:
    """The relay path segment exactly as the client sent it, before percent-decoding."""

    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
        if path.startswith(RELAY_PREFIX):
            return path[len(RELAY_PREFIX):]
    return fallback


def log_request(status_code: int, elapsed: float) -> None:
    REQUEST_LATENCY_HISTOGRAM.observe(elapsed)
    if status_code >= 500:
        log = LOGGER.error
    elif elapsed >= SLOW_REQUEST_SECONDS:
        log = LOGGER.warning
    else:
        log = LOGGER.info
    log("http_request", status=status_code, elapsed_ms=round(elapsed * 1000, 2))


def create_app(
    settings: Optional[ProxySettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("rbxg.proxy", settings.log_level)
    configure_tracing(
        service_name="rbxg.proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))
        service = ProxyService.build(settings, client)
        app.state.proxy = service
        LOGGER.info("proxy_started", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            await service.close()
            if http_client is None:
                await client.aclose()

    app = FastAPI(title="RBXG asset proxy", lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        started = time.perf_counter()
        status_code = 500
        # Handler and upstream log lines for this request carry its method and path.
        with bound_contextvars(http_method=request.method, http_path=request.url.path):
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                log_request(status_code, time.perf_counter() - started)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        LOGGER.warning(
            "proxy_error",
            path=request.url.path,
            status=exc.status_code,
            error_type=type(exc).__name__,
            detail=exc.detail,
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.get("/", response_class=HTMLResponse)
    async def landing_page() -> HTMLResponse:
        return HTMLResponse(LANDING_PAGE)

    @app.get("/asset/{asset_id}")
    async def thumbnail(asset_id: str, service: ProxyService = Depends(get_service)) -> Response:
        payload = await service.thumbnail(asset_id)
        return Response(content=payload.content, media_type=payload.media_type)

    @app.get("/assetinfo/{asset_id}")
    async def asset_info(asset_id: str, service: ProxyService = Depends(get_service)) -> dict[str, Any]:
        return await service.asset_info(asset_id)

    @app.get("/assetinfoz/{asset_ids}")
    async def asset_info_batch(asset_ids: str, service: ProxyService = Depends(get_service)) -> dict[str, Any]:
        return await service.asset_info_batch(asset_ids)

    @app.get("/assetversionid/{version_id}")
    async def asset_version(version_id: str, service: ProxyService = Depends(get_service)) -> dict[str, Any]:
        return await service.asset_version(version_id)

    @app.get("/rbxm/{location:path}")
    async def relay_binary(
        location: str,
        request: Request,
        service: ProxyService = Depends(get_service),
    ) -> Response:
        payload = await service.relay_binary(raw_relay_location(request, location))
        return Response(
            content=payload.content,
            media_type=payload.media_type,
            headers={"Content-Disposition": f'attachment; filename="{payload.filename}"'},
        )

    @app.get("/users/{user_ids}")
    async def users(user_ids: str, service: ProxyService = Depends(get_service)) -> list[dict[str, Any]]:
        return await service.users(user_ids)

    @app.get("/inventory/{user_id}")
    async def inventory(user_id: str, service: ProxyService = Depends(get_service)) -> list[dict[str, Any]]:
        return await service.inventory(user_id)

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(service: ProxyService = Depends(get_service)) -> dict:
        """Health check for readiness/liveness probes."""
        return {
            "status": "healthy",
            "checks": {
                "cache_entries": len(service.cache),
                "background_tasks": service.pending_background_tasks,
            },
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(service: ProxyService = Depends(get_service)) -> PlainTextResponse:
        TOTAL_ENTRIES_GAUGE.set(float(len(service.cache)))
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app


def main() -> None:
    settings = ProxySettings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":  # pragma: no cover - manual entry point
    main()
