"""Central environment-driven settings for the payments service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "edupay-payments"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    redis_url: str = "redis://redis:6379/0"
    rate_limit_per_minute: int = 30
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    payplus_api_url: str = "https://restapi.payplus.co.il/api/v1.0/"
    payplus_api_key: str = ""
    payplus_secret_key: str = ""
    payplus_payment_page_uid: str = ""
    payplus_callback_url: str = "https://api.ludora.app/api/webhooks/payplus"
    payplus_enforce_signature: bool = True
    frontend_origin: str = "https://ludora.app"
    currency: str = "ILS"
    gateway_timeout_seconds: float = 15.0
    gateway_max_retries: int = 3
    gateway_backoff_base_seconds: float = 0.5

    payment_intent_ttl_minutes: int = 30
    payments_polling_active: bool = True
    polling_interval_seconds: float = 60.0
    polling_batch_limit: int = 50
    polling_rate_limit_delay_ms: int = 500
    polling_max_age_hours: float | None = 24.0
    expiry_grace_minutes: int = 30
    token_charge_stale_seconds: int = 120

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def redacted(self, keys: list[str] | None = None) -> dict[str, object]:
        """Return selected settings with secret-looking values masked."""

        values = self.model_dump()
        selected = keys if keys is not None else sorted(values)
        view: dict[str, object] = {}
        for key in selected:
            value = values.get(key)
            if value in (None, ""):
                view[key] = "<unset>"
            elif any(marker in key.upper() for marker in SECRET_MARKERS):
                view[key] = "<redacted>"
            else:
                view[key] = value
        return view


settings = CommonSettings()
