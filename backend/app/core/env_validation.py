"""
Runtime Environment Validation Module

This module validates all required environment variables at application startup.
If validation fails, the application will refuse to start (hard fail).

Every payment provider credential is required up front: a missing PayPal
webhook id or PayMongo webhook secret must stop the process, not surface as a
per-request 500 the first time a webhook arrives.
"""

import sys
from typing import Optional

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProductionSettings(BaseSettings):
    """
    Strict validation schema for production environment variables.

    All required fields MUST be present and valid, or the application will not start.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # CRITICAL: Database Configuration
    # ========================================================================
    database_url: str  # REQUIRED: PostgreSQL connection string

    # ========================================================================
    # CRITICAL: Firebase Authentication
    # ========================================================================
    firebase_project_id: str  # REQUIRED: Firebase project ID
    google_application_credentials: Optional[str] = None

    # ========================================================================
    # CRITICAL: PayMongo
    # ========================================================================
    paymongo_api_url: str = "https://api.paymongo.com/v1"
    paymongo_secret_key: str  # REQUIRED: sk_live_... / sk_test_...
    paymongo_public_key: str  # REQUIRED: pk_live_... / pk_test_...
    paymongo_webhook_secret: str  # REQUIRED: whsk_...
    paymongo_live_mode: bool = False

    # ========================================================================
    # CRITICAL: PayPal
    # ========================================================================
    paypal_environment: str = "sandbox"
    paypal_client_id: str  # REQUIRED
    paypal_client_secret: str  # REQUIRED
    paypal_webhook_id: str  # REQUIRED: used for remote signature verification

    # ========================================================================
    # Application Configuration
    # ========================================================================
    debug: bool = False
    allowed_origins: str = "http://localhost:3000"
    webhook_verification_enforced: bool = True


def validate_environment() -> ProductionSettings:
    """
    Validate all required environment variables at startup.

    This function MUST be called before the FastAPI app starts.
    If validation fails, the application will exit with code 1.

    Returns:
        ProductionSettings: Validated settings object

    Raises:
        SystemExit: If validation fails (exit code 1)
    """

    try:
        settings = ProductionSettings()

        # 1. Empty strings pass pydantic but are just as missing
        for field in (
            "paymongo_secret_key",
            "paymongo_public_key",
            "paymongo_webhook_secret",
            "paypal_client_id",
            "paypal_client_secret",
            "paypal_webhook_id",
        ):
            if not getattr(settings, field).strip():
                print(f"❌ FATAL: {field.upper()} is set but empty", file=sys.stderr)
                sys.exit(1)

        # 2. Key prefixes must match the configured mode
        expected_prefix = "sk_live_" if settings.paymongo_live_mode else "sk_test_"
        if not settings.paymongo_secret_key.startswith(expected_prefix):
            print(
                f"❌ FATAL: PAYMONGO_SECRET_KEY must start with {expected_prefix} "
                f"when PAYMONGO_LIVE_MODE={settings.paymongo_live_mode}",
                file=sys.stderr,
            )
            sys.exit(1)

        if settings.paypal_environment not in ("sandbox", "live"):
            print(
                f"❌ FATAL: Invalid PAYPAL_ENVIRONMENT '{settings.paypal_environment}'. Must be 'sandbox' or 'live'.",
                file=sys.stderr,
            )
            sys.exit(1)

        # 3. Verification may only be relaxed outside production
        if not settings.webhook_verification_enforced and not settings.debug:
            print(
                "❌ FATAL: WEBHOOK_VERIFICATION_ENFORCED=false is only allowed with DEBUG=true",
                file=sys.stderr,
            )
            sys.exit(1)

        # 4. CORS: Ensure wildcard is not used in production
        if not settings.debug:
            origins = [o.strip() for o in settings.allowed_origins.split(",")]
            if "*" in origins:
                print(
                    "❌ FATAL: Wildcard CORS origin (*) detected in production mode.",
                    file=sys.stderr
                )
                sys.exit(1)

        # 5. Database URL: Basic format validation
        if not settings.database_url.startswith("postgresql"):
            print(
                "❌ FATAL: DATABASE_URL must be a PostgreSQL connection string (postgresql:// or postgresql+asyncpg://)",
                file=sys.stderr
            )
            sys.exit(1)

        print("✅ Environment validation passed")
        print(f"   Debug: {settings.debug}")
        print(f"   PayMongo live mode: {settings.paymongo_live_mode}")
        print(f"   PayPal environment: {settings.paypal_environment}")
        print(f"   Webhook verification enforced: {settings.webhook_verification_enforced}")

        return settings

    except ValidationError as e:
        print("❌ FATAL: Environment validation failed", file=sys.stderr)
        print("\nMissing or invalid environment variables:", file=sys.stderr)
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            msg = error["msg"]
            print(f"   • {field}: {msg}", file=sys.stderr)

        print("\nThe application cannot start with invalid configuration.", file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    # Allow running this module directly to test validation
    validate_environment()
    print("\n✅ All environment variables are valid!")
