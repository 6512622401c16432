from pydantic import BaseModel


class ServerSettings(BaseModel):
    log_level: str = "info"

    # Telemetry
    tracing_enabled: bool = False
    otel_service_name: str = "solpay-engine"
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
