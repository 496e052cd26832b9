"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import REQUIRED_SETTINGS, settings

logger = logging.getLogger(__name__)


def missing_settings() -> list[str]:
    """Names of required settings that are unset or empty."""
    return [name for name in REQUIRED_SETTINGS if not getattr(settings, name, "")]


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit when a required setting is missing.
    """
    missing = missing_settings()
    if missing:
        logger.critical("Missing environment variables:\n  %s", "\n  ".join(missing))
        sys.exit(1)

    warnings: list[str] = []

    if "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.SENTRY_DSN:
        warnings.append("SENTRY_DSN not set — error tracking disabled")

    if not settings.CALLBACK_URL.startswith("https://"):
        warnings.append("CALLBACK_URL is not https — Stripe live mode will reject redirects")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
