"""Central environment-driven settings shared by the gateway and provider adapter.

Each process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    database_dsn: str = "sqlite:///./settlepay.db"
    auto_create_schema: bool = False
    kafka_bootstrap_servers: str = "kafka:9092"
    outbox_enabled: bool = True
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    provider_mode: str = "mock"
    provider_url: str = "http://provider-adapter:8003"
    provider_timeout_seconds: float = 10.0
    mock_retryable_probability: float = 0.05
    mock_permanent_probability: float = 0.03
    mock_min_latency_ms: int = 50
    mock_max_latency_ms: int = 200

    # Provider throughput cap: `max_rate_per_window` calls per `rate_window_seconds`.
    max_rate_per_window: int = 2
    rate_window_seconds: float = 1.0
    max_retries: int = 3
    dispatch_interval_seconds: float = 5.0
    stale_processing_seconds: int = 300
    parallel_settlement: bool = False
    immediate_dispatch: bool = True
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
