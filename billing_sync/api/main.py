"""Billing Sync API — Stripe checkout/portal + webhook mirror into Parse."""
from __future__ import annotations

import logging

from billing_sync.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware

from config.settings import settings
from billing_sync.services.parse_store import ParseStore
from billing_sync.services.stripe_client import StripeClient
from billing_sync.services.webhooks import WebhookProcessor

__version__ = "1.0.0"

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Session tokens travel in headers
        send_default_pii=False,
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate settings, build the Stripe + Parse clients, close them on shutdown."""
    # Validate configuration before anything else
    from billing_sync.startup_checks import validate_settings
    validate_settings()

    store = ParseStore.from_settings()
    billing = StripeClient.from_settings()
    app.state.store = store
    app.state.billing = billing
    # Fails here if the dispatch table and the relevant-event list drift apart
    app.state.webhooks = WebhookProcessor(store, billing, sync_billing_address=settings.SYNC_BILLING_ADDRESS)
    logger.info("Billing sync ready")

    yield

    logger.info("Shutting down — closing upstream clients...")
    await billing.close()
    await store.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Billing Sync API",
    version=__version__,
    description="Stripe subscriptions mirrored into a Parse data store",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
from billing_sync.middleware.metrics import MetricsMiddleware
app.add_middleware(MetricsMiddleware)

# Request ID tracing
from billing_sync.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


# ---- Billing routes ----
from billing_sync.api.routes import router as billing_router
app.include_router(billing_router)


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok", "version": __version__}


# --- Structured Error Responses ---

from fastapi import Request as FastAPIRequest
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from billing_sync.errors import BillingError


@app.exception_handler(BillingError)
async def billing_error_handler(request: FastAPIRequest, exc: BillingError):
    """Map domain errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Malformed bodies are a 400 here, with clean field-level details."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=400, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: FastAPIRequest, exc: StarletteHTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("billing_sync.api.main:app", host=settings.API_HOST, port=settings.API_PORT)
