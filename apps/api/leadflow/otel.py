from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from leadflow.core.config import Settings, get_settings


_provider: TracerProvider | None = None
_exporters_attached = False


def tracer_provider(service_name: str | None = None) -> TracerProvider:
    """Return the process-wide provider, registering it globally on first use."""
    global _provider

    if _provider is None:
        settings = get_settings()
        resource = Resource.create(
            {
                "service.name": service_name or settings.app_name,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings | None = None) -> TracerProvider | None:
    """Attach the configured exporters once; a no-op when tracing is disabled."""
    global _exporters_attached

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings.app_name)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "leadflow") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def correlation_request_hook(span: Any, scope: dict[str, Any]) -> None:
    """Copy an inbound ``x-correlation-id`` header onto the FastAPI server span."""
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("latin-1"))
            return
