"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Provider credentials are
optional: without them the adapter falls back to the documented defaults
(unsigned webhooks accepted, verification assumed successful).
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str = "dev-secret"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 30

    default_currency: str = "XOF"
    phone_country_code: str = "225"
    # Provider statuses missing from the mapping tables resolve to this value.
    unknown_status_default: Literal["pending", "approved", "failed"] = "approved"

    fedapay_webhook_secret: str | None = None
    kkiapay_webhook_secret: str | None = None
    require_webhook_signature: bool = False
    kkiapay_private_key: str | None = None
    kkiapay_api_url: str = "https://api.kkiapay.me"
    provider_timeout_seconds: float = 10.0

    auth_url: str | None = None
    auth_api_key: str | None = None

    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    email_from: str = "Legal Form <onboarding@resend.dev>"
    notification_topic: str = "payments.notifications"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
