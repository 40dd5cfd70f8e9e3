"""Logging and tracing setup shared by the proxy server and the fetch CLI.

Logs always go to stderr so that ``rbxg-fetch`` can keep stdout for the JSON
it prints. The server renders one JSON object per line; the CLI can ask for
the console renderer instead.
"""

from __future__ import annotations

import logging
import sys
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asgi import OpenTelemetryMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars


UNTRACED_PATHS = "healthz,metrics"

_handler_installed = False
_tracing_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None, *, json_output: bool = True) -> None:
    """Route structlog through stdlib logging on stderr at ``level``."""

    global _handler_installed
    numeric_level = _log_level(level)
    root = logging.getLogger()
    if not _handler_installed:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        _handler_installed = True
    root.setLevel(numeric_level)

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.dict_tracebacks,
    ]
    if json_output:
        processors.append(structlog.processors.EventRenamer("message"))
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``key=value,key2=value2`` into a header mapping, skipping malformed items."""
    if not headers:
        return {}
    parsed: Dict[str, str] = {}
    for item in headers.split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def _span_exporter(endpoint: Optional[str], headers: Optional[str]) -> SpanExporter:
    if endpoint:
        return OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
    return InMemorySpanExporter()


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    *,
    exporter: Optional[SpanExporter] = None,
) -> trace.TracerProvider:
    """
    Install the process tracer provider once and instrument outgoing httpx calls.

    Spans are exported over OTLP/HTTP when ``endpoint`` is set and kept in
    memory otherwise. An explicit ``exporter`` wins over both. Later calls
    return the provider already installed.
    """

    global _tracing_configured
    current = trace.get_tracer_provider()
    if _tracing_configured or isinstance(current, TracerProvider):
        _tracing_configured = True
        return current

    ratio = max(0.0, min(1.0, sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=TraceIdRatioBased(ratio),
    )
    chosen = exporter or _span_exporter(endpoint, headers)
    if isinstance(chosen, OTLPSpanExporter):
        provider.add_span_processor(BatchSpanProcessor(chosen))
    else:
        provider.add_span_processor(SimpleSpanProcessor(chosen))
    trace.set_tracer_provider(provider)

    HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    _tracing_configured = True
    return provider


def instrument_fastapi_app(app, excluded_urls: str = UNTRACED_PATHS) -> None:
    """Trace every route of ``app`` except the probe and scrape endpoints."""

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=excluded_urls,
    )
    if not any(getattr(m.cls, "__name__", "") == "OpenTelemetryMiddleware" for m in app.user_middleware):
        app.add_middleware(OpenTelemetryMiddleware, tracer_provider=trace.get_tracer_provider())
