"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Gateway credentials, pricing,
and affiliate rules are controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    postgres_dsn: str
    redis_url: str = "redis://redis:6379/0"
    api_key: str
    payments_url: str = "http://payments:8001"
    public_base_url: str = "https://cvchapchap.co.tz"

    selcom_base_url: str = "https://apigw.selcommobile.com"
    selcom_api_key: str = ""
    # Empty secret disables webhook signature checks (local development only).
    selcom_api_secret: str = ""
    selcom_vendor_id: str = ""
    gateway_timeout_seconds: float = 15.0

    cv_price_tzs: int = 5000
    currency: str = "TZS"
    order_expiry_minutes: int = 30
    default_commission_rate: float = 10.0
    min_withdrawal_tzs: int = 5000

    rate_limit_backend: str = "memory"
    rate_limit_per_minute: int = 20
    # Proxies in front of the API that append to X-Forwarded-For; 0 means use the socket peer.
    trusted_proxy_hops: int = 0

    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
