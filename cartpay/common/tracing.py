"""OpenTelemetry setup helpers used by each FastAPI service."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from cartpay.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting spans over OTLP HTTP.

    With `TRACING_ENABLED=false` the global no-op provider is left in place,
    so nothing tries to reach a collector.
    """

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name, "service.namespace": "cartpay"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation, skipping probe and scrape routes."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
