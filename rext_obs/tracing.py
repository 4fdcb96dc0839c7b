"""
Distributed Tracing Setup (OpenTelemetry).

Auto-instruments: fastapi, httpx ONLY. Disabled unless OTEL_TRACES_ENABLED.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from rext_config.settings import Settings
from rext_obs.logging import get_logger

logger = get_logger(__name__)


def setup_tracing(settings: Settings) -> bool:
    """
    Setup OpenTelemetry distributed tracing.

    Instruments: httpx (upstream fetches)
    Exports: OTLP (Jaeger/Tempo/Collector)

    Returns:
        True when tracing was enabled
    """
    if not settings.OTEL_TRACES_ENABLED:
        return False

    resource = Resource.create(
        {
            "service.name": settings.OTEL_SERVICE_NAME,
            "service.version": "0.1.0",
            "deployment.environment": settings.ENVIRONMENT,
        }
    )

    provider = TracerProvider(resource=resource)
    otlp_exporter = OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT)
    provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    trace.set_tracer_provider(provider)

    HTTPXClientInstrumentor().instrument()

    logger.info(
        "tracing_enabled",
        service=settings.OTEL_SERVICE_NAME,
        endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
    )
    return True


def instrument_app(app: FastAPI, settings: Settings) -> None:
    """Attach FastAPI request tracing to one application instance."""
    if settings.OTEL_TRACES_ENABLED:
        FastAPIInstrumentor.instrument_app(app)
