from functools import lru_cache
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Comma-separated in the environment; the CSV validator below does the split.
CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    environment: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT", "APP_ENV"))
    database_url: str = ""

    jwt_secret: str = ""
    jwt_audience: str = ""

    docs_enabled: bool = True
    openapi_enabled: bool = True
    expose_error_details: bool = False

    public_base_url: str = Field(
        default="http://localhost:8000",
        validation_alias=AliasChoices("PUBLIC_BASE_URL", "FRONTEND_URL"),
    )

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_currency: str = "usd"
    allow_insecure_webhooks: bool = Field(
        default=False,
        validation_alias=AliasChoices("ALLOW_INSECURE_WEBHOOKS"),
    )

    # Pricing
    platform_fee_rate: float = Field(
        default=0.10,
        validation_alias=AliasChoices("PLATFORM_FEE_PERCENTAGE", "PLATFORM_FEE_RATE"),
    )
    platform_fee_minimum: float = Field(
        default=0.0,
        validation_alias=AliasChoices("PLATFORM_FEE_MINIMUM"),
    )
    lead_default_cost_cents: int = Field(
        default=2000,
        validation_alias=AliasChoices("LEAD_DEFAULT_COST_CENTS", "DEFAULT_LEAD_COST"),
    )

    # Routing
    max_alternative_providers: int = 2
    fallback_window_hours: int = 24
    # A checkout older than this with no payment event is treated as abandoned.
    lead_checkout_ttl_minutes: int = 60
    featured_priority_weight: float = 15.0

    # Notifications
    notification_max_retries: int = 3
    notification_retry_base_delay_seconds: float = 1.0
    enable_email: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = Field(
        default="no-reply@leadflow.local",
        validation_alias=AliasChoices("SMTP_FROM_EMAIL", "EMAIL_FROM"),
    )

    # Geocoding
    enable_geocoding: bool = False
    google_maps_api_key: str = ""
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    geocoding_user_agent: str = "leadflow-geocoder/1.0"
    geocoding_timeout_seconds: float = 10.0

    # Recurring jobs
    enable_recurring_jobs: bool = False
    fallback_sweep_interval_seconds: int = 300
    geocode_backfill_interval_seconds: int = 900
    geocode_backfill_batch_size: int = 25
    scheduled_tasks_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("SCHEDULED_TASKS_API_KEY", "CRON_API_KEY"),
    )

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: CsvList = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "address",
            "customer_name",
            "customer_email",
            "customer_phone",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    rate_limit_webhook_enabled: bool = True
    rate_limit_stripe_ip_per_min: int = 120
    rate_limit_api_enabled: bool = False
    rate_limit_api_per_min: int = 300
    trusted_proxy_cidrs: CsvList = Field(default_factory=list)

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: CsvList = Field(default_factory=list)
    cors_allow_methods: CsvList = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PUT",
        "PATCH",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: CsvList = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
        "Stripe-Signature",
        "X-API-Key",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        "trusted_proxy_cidrs",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_sqlite(self) -> bool:
        return (self.database_url or "").startswith("sqlite")

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def alternative_provider_count(self) -> int:
        return int(max(0, min(3, self.max_alternative_providers)))

    def validate_required_config(self) -> list[str]:
        """Return human-readable problems that make the service unusable."""
        errors: list[str] = []
        if not self.database_url:
            errors.append("DATABASE_URL is not set")
        if not self.jwt_secret:
            errors.append("JWT_SECRET is not set")
        if self.stripe_secret_key and not self.stripe_webhook_secret and not self.allow_insecure_webhooks:
            errors.append("STRIPE_WEBHOOK_SECRET is required when STRIPE_SECRET_KEY is set")
        if self.enable_email and not self.smtp_host:
            errors.append("SMTP_HOST is required when ENABLE_EMAIL is true")
        if not 0 <= self.platform_fee_rate < 1:
            errors.append("PLATFORM_FEE_PERCENTAGE must be in [0, 1)")
        return errors


@lru_cache
def get_settings() -> Settings:
    return Settings()
