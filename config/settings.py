"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "3000"))

    # Data store (Parse-compatible REST server)
    API_URL = os.getenv("API_URL", "")
    X_PARSE_APPLICATION_ID = os.getenv("X_PARSE_APPLICATION_ID", "")
    X_PARSE_REST_API_KEY = os.getenv("X_PARSE_REST_API_KEY", "")
    X_PARSE_MASTER_KEY = os.getenv("X_PARSE_MASTER_KEY", "")

    # Stripe
    STRIPE_PRIVATE_KEY = os.getenv("STRIPE_PRIVATE_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_DEFAULT_SUBSCRIBE_PRICE_ID = os.getenv("STRIPE_DEFAULT_SUBSCRIBE_PRICE_ID", "")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
    # Pinned so current_period_* stay on the subscription object
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION", "2024-06-20")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

    # Frontend base URL for checkout/portal redirects
    CALLBACK_URL = os.getenv("CALLBACK_URL", "")

    # Copy billing address + phone from the payment method onto the user
    SYNC_BILLING_ADDRESS = os.getenv("SYNC_BILLING_ADDRESS", "").lower() in ("1", "true", "yes")

    # Outbound HTTP
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "15"))

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


# Settings the service cannot start without
REQUIRED_SETTINGS = (
    "X_PARSE_APPLICATION_ID",
    "X_PARSE_MASTER_KEY",
    "X_PARSE_REST_API_KEY",
    "API_URL",
    "STRIPE_DEFAULT_SUBSCRIBE_PRICE_ID",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRIVATE_KEY",
    "CALLBACK_URL",
)


settings = Settings()
