from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


_provider: TracerProvider | None = None
_exporters_configured = False


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
            }
        )
    )
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def setup_tracing(service_name: str) -> TracerProvider:
    """Install the process tracer provider once; exporters come from the environment."""
    global _exporters_configured

    provider = _get_or_create_provider(service_name)
    if _exporters_configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_configured = True
    return provider


def setup_inmemory_tracing(service_name: str = "leadflow-api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    correlation_raw = headers.get(b"x-correlation-id")
    if correlation_raw:
        span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
    user_agent = headers.get(b"user-agent")
    if user_agent:
        span.set_attribute("http.user_agent", user_agent.decode("utf-8", errors="replace"))
