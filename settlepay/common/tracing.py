"""OpenTelemetry setup helpers used by each FastAPI service and the dispatcher."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from settlepay.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider with OTLP HTTP exporter unless tracing is disabled."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def get_tracer(name: str = "settlepay") -> trace.Tracer:
    """Tracer for manual spans; a no-op tracer until `setup_tracing` registers one."""

    return trace.get_tracer(name)
