"""Application configuration using Pydantic Settings."""

from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class PayPalEnvironment(str, Enum):
    SANDBOX = "sandbox"
    LIVE = "live"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # App
    app_name: str = "Rental Payments Reconciliation"
    debug: bool = False
    api_v1_prefix: str = "/v1"
    log_level: str = "INFO"
    allowed_origins: str = "http://localhost:3000"

    # Database
    database_url: str

    # Firebase Auth
    firebase_project_id: str
    google_application_credentials: Optional[str] = None

    # PayMongo (payment intents + GCash sources)
    paymongo_api_url: str = "https://api.paymongo.com/v1"
    paymongo_secret_key: str
    paymongo_public_key: str
    paymongo_webhook_secret: str
    paymongo_live_mode: bool = False
    paymongo_source_ip_allowlist: str = ""
    statement_descriptor: str = "Rental Payments"

    # PayPal (orders + captures)
    paypal_environment: PayPalEnvironment = PayPalEnvironment.SANDBOX
    paypal_client_id: str
    paypal_client_secret: str
    paypal_webhook_id: str
    paypal_brand_name: str = "Rental Payments"

    # Currency used for every provider call
    currency: str = "PHP"

    # Legacy fallback for GCash sources that carry no is_deposit discriminator
    deposit_amount_heuristic: Decimal = Decimal("300")

    # Webhooks
    webhook_verification_enforced: bool = True
    webhook_tolerance_seconds: int = 300

    # Outbound HTTP and persistence retries
    provider_timeout_seconds: float = 10.0
    persistence_retry_attempts: int = 3
    persistence_retry_base_delay: float = 0.2

    @property
    def paypal_base_url(self) -> str:
        """PayPal REST base URL for the configured environment."""
        if self.paypal_environment == PayPalEnvironment.LIVE:
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def source_ip_allowlist(self) -> list[str]:
        return [ip.strip() for ip in self.paymongo_source_ip_allowlist.split(",") if ip.strip()]


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
