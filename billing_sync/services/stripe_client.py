"""
Stripe billing client
---
Async adapter for the handful of Stripe calls this service makes:
checkout + billing portal sessions, subscription update/retrieval, payment
method retrieval, and webhook signature verification.

API calls go straight to the Stripe REST API over httpx (form-encoded);
signature checks use the official `stripe` library so the v1 scheme and
timestamp tolerance match Stripe's own implementation.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

import httpx
import stripe

from config.settings import settings
from billing_sync.errors import SignatureError, UpstreamError, ValidationError
from billing_sync.models.records import Expanded, StripeRef

logger = logging.getLogger(__name__)

# Nested field that must be an object for Subscription.plan to be known
SUBSCRIPTION_EXPAND = ("plan.product",)
PAYMENT_METHOD_EXPAND = ("billing_details",)


def _expand_params(expand: Sequence[str]) -> list[tuple[str, str]]:
    return [("expand[]", path) for path in expand]


def _has_expanded_product(subscription: dict) -> bool:
    product = (subscription.get("plan") or {}).get("product")
    return isinstance(product, dict) and "name" in product


class StripeClient:
    """Billing provider client. One instance per process."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        api_base: str = "https://api.stripe.com",
        api_version: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15,
        webhook_tolerance: int = 300,
    ):
        self.api_base = api_base.rstrip("/")
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self._headers = {"Authorization": f"Bearer {api_key}"}
        if api_version:
            self._headers["Stripe-Version"] = api_version
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls) -> "StripeClient":
        return cls(
            api_key=settings.STRIPE_PRIVATE_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            api_base=settings.STRIPE_API_BASE,
            api_version=settings.STRIPE_API_VERSION,
            timeout=settings.HTTP_TIMEOUT,
            webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ── transport ────────────────────────────────────────────────────────────

    async def _call(
        self,
        method: str,
        path: str,
        *,
        data: Optional[dict[str, str]] = None,
        params: Optional[list[tuple[str, str]]] = None,
    ) -> dict:
        try:
            resp = await self._client.request(
                method, f"{self.api_base}{path}", data=data, params=params, headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Stripe {method} {path} failed: {e!r}")
            raise UpstreamError(f"stripe unreachable: {e}") from e

        if resp.is_success:
            return resp.json()

        try:
            error = resp.json().get("error", {})
        except ValueError:
            error = {}
        message = error.get("message") or resp.text
        logger.error(f"Stripe {method} {path} -> {resp.status_code}: {message}")
        # Rejected parameters (bad price id, unknown customer) are the caller's fault
        status = 400 if resp.status_code in (400, 404) else 500
        raise UpstreamError(message, status_code=status, details={"stripe_status": resp.status_code})

    # ── sessions ─────────────────────────────────────────────────────────────

    async def create_checkout_session(
        self,
        price_id: str,
        customer_email: Optional[str],
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create a subscription-mode Checkout session. Returns its URL."""
        data = {
            "mode": "subscription",
            "payment_method_types[]": "card",
            "billing_address_collection": "required",
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": "1",
            "client_reference_id": client_reference_id,
            "subscription_data[metadata][clientId]": client_reference_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            data["customer_email"] = customer_email

        session = await self._call("POST", "/v1/checkout/sessions", data=data)
        url = session.get("url")
        if not url:
            raise UpstreamError("stripe session url not found")
        logger.info(f"Checkout session {session.get('id')} created for user={client_reference_id}")
        return url

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a billing portal session. Returns its URL."""
        session = await self._call(
            "POST",
            "/v1/billing_portal/sessions",
            data={"customer": customer_id, "return_url": return_url},
        )
        url = session.get("url")
        if not url:
            raise UpstreamError("stripe session url not found")
        return url

    # ── subscriptions ────────────────────────────────────────────────────────

    async def update_subscription(self, subscription_id: str, *, cancel_at_period_end: bool) -> dict:
        return await self._call(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={"cancel_at_period_end": "true" if cancel_at_period_end else "false"},
        )

    async def retrieve_subscription(
        self, subscription_id: str, expand: Sequence[str] = SUBSCRIPTION_EXPAND
    ) -> dict:
        return await self._call(
            "GET", f"/v1/subscriptions/{subscription_id}", params=_expand_params(expand),
        )

    async def resolve_subscription(self, ref: StripeRef) -> dict:
        """Turn a subscription reference into a record with plan.product expanded.

        An inline object is only trusted when the product is already expanded;
        anything shallower is re-fetched.
        """
        if isinstance(ref, Expanded) and _has_expanded_product(ref.data):
            return ref.data
        return await self.retrieve_subscription(ref.id)

    async def retrieve_payment_method(
        self, payment_method_id: str, expand: Sequence[str] = PAYMENT_METHOD_EXPAND
    ) -> dict:
        return await self._call(
            "GET", f"/v1/payment_methods/{payment_method_id}", params=_expand_params(expand),
        )

    async def resolve_payment_method(self, ref: StripeRef) -> dict:
        if isinstance(ref, Expanded) and "billing_details" in ref.data:
            return ref.data
        return await self.retrieve_payment_method(ref.id)

    # ── webhooks ─────────────────────────────────────────────────────────────

    def verify_and_parse_event(
        self, payload: bytes, sig_header: Optional[str], secret: Optional[str] = None
    ) -> dict[str, Any]:
        """Check the Stripe-Signature header against the raw body, then parse it.

        `payload` must be the exact bytes received; any re-serialisation
        breaks the signature.
        """
        if not sig_header:
            raise SignatureError("request missing stripe-signature")

        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise SignatureError("invalid payload encoding") from e
        try:
            stripe.WebhookSignature.verify_header(
                text, sig_header, secret or self.webhook_secret, self.webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(str(e) or "invalid signature") from e

        try:
            event = json.loads(text)
        except ValueError as e:
            raise ValidationError("webhook payload is not valid JSON") from e
        if not isinstance(event, dict) or "type" not in event:
            raise ValidationError("webhook payload is not a Stripe event")
        return event
