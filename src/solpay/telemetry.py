import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)

from solpay.config.server import ServerSettings


def _build_exporter(endpoint: str) -> SpanExporter:
    try:
        return OTLPSpanExporter(endpoint=endpoint, insecure=True)
    except (ValueError, OSError) as e:
        logging.warning(
            f"Failed to initialize OTLP exporter, falling back to console exporter: {e}"
        )
        return ConsoleSpanExporter()


def init_telemetry(server: ServerSettings) -> TracerProvider | None:
    """
    Install a global tracer provider for the engine's verification spans.

    Without tracing enabled the no-op provider from opentelemetry-api stays in
    place, so instrumented code runs unchanged.

    Args:
        server: Server settings carrying the service name and OTLP endpoint

    Returns:
        The installed provider, or None when tracing is disabled

    Raises:
        ValueError: If the service name is blank
    """
    if not server.tracing_enabled:
        return None

    service_name = server.otel_service_name.lower().strip()
    if not service_name:
        raise ValueError(
            "otel_service_name must be provided for OpenTelemetry initialization"
        )

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(_build_exporter(server.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)
    return provider
