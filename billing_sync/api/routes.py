"""Billing routes — checkout, billing portal, subscription update, Stripe webhooks.

Endpoints:
- GET  /create-checkout-session — redirect to Checkout for the default price
- POST /create-checkout-session — Checkout URL for a given price
- POST /create-portal-session   — billing portal URL for a subscribed caller
- PUT  /update-subscription     — toggle cancel-at-period-end
- POST /webhooks                — Stripe webhook ingress (raw body)
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, StrictBool

from config.settings import settings
from billing_sync.api.deps import get_billing, get_current_user, get_store, get_webhook_processor
from billing_sync.errors import AuthError, BillingError, ConflictError, ValidationError
from billing_sync.models.records import Subscription, User, encode_pointer
from billing_sync.services.parse_store import ParseStore
from billing_sync.services.stripe_client import StripeClient
from billing_sync.services.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


# ── Schemas ──────────────────────────────────────────────────────────────────

class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(..., alias="priceId", min_length=1)


class UpdateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cancel_at_period_end: StrictBool = Field(..., alias="cancelAtPeriodEnd")


# ── Helpers ──────────────────────────────────────────────────────────────────

def _callback_url(redirect: Optional[str] = None) -> str:
    """CALLBACK_URL/<redirect>, or CALLBACK_URL/ when no redirect is given."""
    return f"{settings.CALLBACK_URL.rstrip('/')}/{(redirect or '').lstrip('/')}"


async def _find_subscription(store: ParseStore, user: User) -> Optional[Subscription]:
    """The caller's subscription, preferring an active one over stale duplicates."""
    records = await store.query(Subscription, {"user": encode_pointer(User.class_name, user.id)})
    for record in records:
        if record.is_active:
            return record
    return records[0] if records else None


async def _checkout_url(
    price_id: str,
    redirect: Optional[str],
    user: User,
    store: ParseStore,
    billing: StripeClient,
) -> str:
    current = await _find_subscription(store, user)
    if current is not None and current.is_active:
        raise ConflictError("user already subscribed")

    return await billing.create_checkout_session(
        price_id=price_id,
        customer_email=user.email,
        client_reference_id=user.id,
        success_url=_callback_url(redirect),
        cancel_url=_callback_url(),
    )


# ── Checkout ─────────────────────────────────────────────────────────────────

@router.get("/create-checkout-session")
async def checkout_redirect(
    redirect: Optional[str] = None,
    user: User = Depends(get_current_user),
    store: ParseStore = Depends(get_store),
    billing: StripeClient = Depends(get_billing),
):
    """Send the browser straight to Checkout for the default subscription price."""
    url = await _checkout_url(settings.STRIPE_DEFAULT_SUBSCRIBE_PRICE_ID, redirect, user, store, billing)
    return RedirectResponse(url, status_code=302)


@router.post("/create-checkout-session")
async def create_checkout_session(
    req: CheckoutRequest,
    redirect: Optional[str] = None,
    user: User = Depends(get_current_user),
    store: ParseStore = Depends(get_store),
    billing: StripeClient = Depends(get_billing),
):
    """Create a Checkout session for `priceId`. Returns {"url": ...}."""
    url = await _checkout_url(req.price_id, redirect, user, store, billing)
    return {"url": url}


# ── Billing portal ───────────────────────────────────────────────────────────

@router.post("/create-portal-session")
async def create_portal_session(
    redirect: Optional[str] = None,
    user: User = Depends(get_current_user),
    store: ParseStore = Depends(get_store),
    billing: StripeClient = Depends(get_billing),
):
    subscription = await _find_subscription(store, user)
    if subscription is None or not subscription.is_active:
        raise AuthError("user not subscribed")
    if not subscription.stripe_customer_id:
        raise ValidationError("stripeCustomerId not found")

    url = await billing.create_portal_session(subscription.stripe_customer_id, _callback_url(redirect))
    return {"url": url}


# ── Subscription update ──────────────────────────────────────────────────────

@router.put("/update-subscription")
async def update_subscription(
    req: UpdateSubscriptionRequest,
    user: User = Depends(get_current_user),
    store: ParseStore = Depends(get_store),
    billing: StripeClient = Depends(get_billing),
):
    """Forward cancel-at-period-end to Stripe.

    The local mirror is refreshed by the customer.subscription.updated
    webhook that follows, not here.
    """
    subscription = await _find_subscription(store, user)
    if subscription is None or not subscription.stripe_id:
        raise ValidationError("user not subscribed")

    updated = await billing.update_subscription(
        subscription.stripe_id, cancel_at_period_end=req.cancel_at_period_end,
    )
    logger.info(
        f"Subscription {subscription.stripe_id} cancel_at_period_end={req.cancel_at_period_end} user={user.id}"
    )
    return {"subscription": updated}


# ── Stripe webhooks ──────────────────────────────────────────────────────────

@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Stripe webhook ingress.

    The body is read as raw bytes and handed over untouched; the signature
    covers the exact payload. Any failure answers 400 so Stripe redelivers.
    """
    payload = await request.body()
    try:
        await processor.handle(payload, stripe_signature)
    except BillingError as e:
        return JSONResponse(status_code=400, content={
            "error": e.code,
            "message": f"Webhook Error: {e.message}",
        })
    return {"received": True}
