"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LIFETIME_PRODUCT_IDS = (
    "com.cybersimply.adfree.lifetime.2025,com.cybersimply.adfree.lifetime"
)
DEFAULT_SUBSCRIPTION_PRODUCT_IDS = (
    "com.cybersimply.adfree.monthly.2025,"
    "com.cybersimply.adfree.monthly,"
    "com.cybersimply.premium.monthly"
)


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


def _split_csv(value: str) -> list[str]:
    items: list[str] = []
    for item in value.split(","):
        item = item.strip()
        if item and item not in items:
            items.append(item)
    return items


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "CyberSimply Ad-Free Entitlements API"
    api_version: str = "0.1.0"
    api_description: str = "Purchase verification and ad-free entitlement reconciliation"

    # Auth collaborator - Supabase issues HS256 access tokens
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    tracing_sample_ratio: float = 1.0
    service_name: str = "cybersimply-adfree-api"

    # Apple App Store
    apple_bundle_id: str = "com.cybersimply.app"
    apple_shared_secret: str = ""  # App-specific shared secret from App Store Connect
    apple_environment: str = "production"  # Endpoint tried first: production or sandbox
    apple_verify_receipt_production_url: str = "https://buy.itunes.apple.com/verifyReceipt"
    apple_verify_receipt_sandbox_url: str = "https://sandbox.itunes.apple.com/verifyReceipt"
    # Comma-separated paths to trusted root certificates (PEM or DER), e.g. AppleRootCA-G3.cer
    apple_root_certificates: str = ""
    apple_app_apple_id: int | None = None  # Numeric App Store app id; required for production payloads
    apple_enable_online_checks: bool = True  # OCSP revocation checks on signing chains
    accept_sandbox_notifications: bool = True

    # Product catalog (must match App Store Connect configuration)
    lifetime_product_ids: str = DEFAULT_LIFETIME_PRODUCT_IDS
    subscription_product_ids: str = DEFAULT_SUBSCRIPTION_PRODUCT_IDS

    # Outbound network calls
    http_timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5

    # Client side
    entitlement_api_url: str = "http://localhost:8000"
    purchase_platform: str = "native"  # native or fake
    purchase_export_path: str = "purchases.json"
    status_cache_path: str = "adfree_status.json"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def lifetime_products(self) -> list[str]:
        """Lifetime (non-expiring) product identifiers."""
        return _split_csv(self.lifetime_product_ids)

    @property
    def subscription_products(self) -> list[str]:
        """Subscription (expiring) product identifiers."""
        return _split_csv(self.subscription_product_ids)

    @property
    def apple_root_certificate_paths(self) -> list[str]:
        """Paths of trusted root certificates for signed payloads."""
        return _split_csv(self.apple_root_certificates)

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.apple_environment.lower() not in ("production", "sandbox"):
            errors.append("APPLE_ENVIRONMENT must be 'production' or 'sandbox'")

        if self.purchase_platform not in ("native", "fake"):
            errors.append("PURCHASE_PLATFORM must be 'native' or 'fake'")

        if self.retry_attempts < 1:
            errors.append("RETRY_ATTEMPTS must be at least 1")

        if not 0.0 <= self.tracing_sample_ratio <= 1.0:
            errors.append("TRACING_SAMPLE_RATIO must be between 0 and 1")

        overlap = set(self.lifetime_products) & set(self.subscription_products)
        if overlap:
            errors.append(f"Products configured as both lifetime and subscription: {sorted(overlap)}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
