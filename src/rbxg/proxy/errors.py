"""Error types raised by the proxy core and mapped to HTTP responses by the app."""

from __future__ import annotations

from typing import Optional


class ProxyError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class BadRequestError(ProxyError):
    status_code = 400
    default_detail = "Bad request"


class NotFoundError(ProxyError):
    status_code = 404
    default_detail = "Not found"


class UpstreamError(ProxyError):
    """Upstream call failed, timed out, or returned an unusable response."""

    status_code = 500
    default_detail = "Upstream request failed"

    def __init__(self, detail: Optional[str] = None, *, upstream_status: Optional[int] = None) -> None:
        super().__init__(detail)
        self.upstream_status = upstream_status


class RateLimitedError(UpstreamError):
    """Upstream kept answering 429 after every retry attempt."""

    default_detail = "Upstream rate limit exceeded"


class UpstreamTimeoutError(UpstreamError):
    default_detail = "Upstream request timed out"
