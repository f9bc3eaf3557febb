"""Central environment-driven settings shared by checkout and store processes.

Each process loads this once at startup. Behavior is controlled by environment
variables or a local `.env` file.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    postgres_dsn: str = "sqlite:///./cartpay-store.db"
    store_url: str = "http://store:8010"
    gateway_url: str = "http://payment-gateway:8020"
    gateway_api_key: str = ""
    currency: str = "EUR"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    retry_max_attempts: int = 3
    retry_initial_backoff_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_backoff_seconds: float = 30.0
    retry_attempt_timeout_seconds: float = 10.0

    free_shipping_threshold_cents: int = 5000
    shipping_express_cents: int = 495
    shipping_urgent_cents: int = 995
    default_tax_rate: float = 0.21

    pending_order_ttl_seconds: int = 1800
    confirmation_path: str = "/order-confirmation"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
