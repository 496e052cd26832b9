"""
Stripe webhook reconciliation
---
Verifies inbound Stripe events and mirrors their state into the data store.

Handles:
- product.created / product.updated      → upsert Product
- product.deleted                        → destroy Product (missing is fine)
- price.created / price.updated          → upsert Price
- price.deleted                          → destroy Price (missing is fine)
- checkout.session.completed             → create/update Subscription, link user
- customer.subscription.created/updated/deleted → update existing Subscription
- invoice.payment_failed                 → update the invoice's Subscription

Every other event type is acknowledged and ignored. Any failure propagates so
the webhook route answers non-2xx and Stripe redelivers the event; there is
no local retry.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from billing_sync.errors import BillingError, NotFoundError, SignatureError, UnhandledEventError, ValidationError
from billing_sync.middleware.metrics import metrics
from billing_sync.models.records import (
    ParseRecord,
    Price,
    Product,
    StripeRef,
    Subscription,
    User,
    to_ref,
)
from billing_sync.services.parse_store import ParseStore
from billing_sync.services.stripe_client import StripeClient

logger = logging.getLogger(__name__)

RELEVANT_EVENTS = frozenset({
    "product.created",
    "product.updated",
    "product.deleted",
    "price.created",
    "price.updated",
    "price.deleted",
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_failed",
})

# Metadata key linking a Stripe subscription back to its user
CLIENT_ID_METADATA_KEY = "clientId"

Handler = Callable[[dict], Awaitable[None]]


class WebhookProcessor:
    """Dispatches verified Stripe events to per-type handlers."""

    def __init__(
        self,
        store: ParseStore,
        billing: StripeClient,
        sync_billing_address: bool = False,
    ):
        self.store = store
        self.billing = billing
        self.sync_billing_address = sync_billing_address
        self._handlers: dict[str, Handler] = {
            "product.created": self._upsert_product,
            "product.updated": self._upsert_product,
            "product.deleted": self._delete_product,
            "price.created": self._upsert_price,
            "price.updated": self._upsert_price,
            "price.deleted": self._delete_price,
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
            "invoice.payment_failed": self._invoice_payment_failed,
        }
        missing = RELEVANT_EVENTS - self._handlers.keys()
        extra = self._handlers.keys() - RELEVANT_EVENTS
        if missing or extra:
            raise RuntimeError(
                f"webhook dispatch table out of sync: missing={sorted(missing)} extra={sorted(extra)}"
            )

    # ── entry point ──────────────────────────────────────────────────────────

    async def handle(self, payload: bytes, sig_header: Optional[str]) -> str:
        """Verify, filter and apply one delivery. Returns "processed" or "ignored"."""
        try:
            event = self.billing.verify_and_parse_event(payload, sig_header)
        except SignatureError:
            metrics.record_webhook("unknown", "rejected")
            raise

        event_type = event["type"]
        logger.info(f"🔔 Received event: {event.get('id')} type: {event_type}")

        if event_type not in RELEVANT_EVENTS:
            logger.debug(f"Ignoring Stripe event type: {event_type}")
            metrics.record_webhook(event_type, "ignored")
            return "ignored"

        try:
            await self.dispatch(event)
        except BillingError as e:
            logger.error(f"❌ Webhook {event.get('id')} ({event_type}) failed: {e.message}")
            metrics.record_webhook(event_type, "failed")
            raise
        except Exception as e:
            logger.exception(f"❌ Webhook {event.get('id')} ({event_type}) crashed")
            metrics.record_webhook(event_type, "failed")
            raise BillingError(f"could not process {event_type}: {type(e).__name__}") from e
        metrics.record_webhook(event_type, "processed")
        return "processed"

    async def dispatch(self, event: dict[str, Any]) -> None:
        handler = self._handlers.get(event["type"])
        if handler is None:
            raise UnhandledEventError(f"Unhandled relevant event: {event['type']}")
        await handler(event["data"]["object"])

    # ── products / prices ────────────────────────────────────────────────────

    async def _upsert_product(self, data: dict) -> None:
        product = await self.store.get_or_create(Product, "stripeId", data["id"])
        product.apply_stripe(data)
        await self.store.save(product)
        logger.info(f"Product {data['id']} mirrored")

    async def _delete_product(self, data: dict) -> None:
        await self._delete_mirrored(Product, data["id"])

    async def _upsert_price(self, data: dict) -> None:
        price = await self.store.get_or_create(Price, "stripeId", data["id"])
        price.apply_stripe(data)
        await self.store.save(price)
        logger.info(f"Price {data['id']} mirrored")

    async def _delete_price(self, data: dict) -> None:
        await self._delete_mirrored(Price, data["id"])

    async def _delete_mirrored(self, record_cls: type[ParseRecord], stripe_id: str) -> None:
        record = await self.store.find_by_stripe_id(record_cls, stripe_id)
        if record is None:
            logger.warning(f"{record_cls.class_name} {stripe_id} not in data store — nothing to delete")
            return
        await self.store.destroy(record)
        logger.info(f"{record_cls.class_name} {stripe_id} deleted")

    # ── subscriptions ────────────────────────────────────────────────────────

    async def _subscription_changed(self, data: dict) -> None:
        await self._update_subscription(to_ref(data))

    async def _invoice_payment_failed(self, invoice: dict) -> None:
        ref = to_ref(invoice.get("subscription") or _invoice_parent_subscription(invoice))
        if ref is None:
            logger.info(f"Invoice {invoice.get('id')} has no subscription — nothing to update")
            return
        # TODO: notify the customer once an email provider is wired in
        await self._update_subscription(ref)
        logger.warning(f"Payment failed: stripe_sub={ref.id} invoice={invoice.get('id')}")

    async def _update_subscription(self, ref: Optional[StripeRef]) -> None:
        """Refresh an existing local Subscription from Stripe.

        The record is created by checkout.session.completed; if it is not
        there yet the event fails and Stripe retries it later.
        """
        if ref is None:
            raise ValidationError("event did not reference a subscription")
        subscription = await self.billing.resolve_subscription(ref)
        record = await self.store.find_by_stripe_id(Subscription, subscription["id"])
        if record is None:
            raise NotFoundError(f"subscription {subscription['id']} not found in data store")
        record.apply_stripe(subscription)
        await self.store.save(record)
        logger.info(f"Subscription {record.stripe_id} -> {record.status}")

    async def _checkout_completed(self, session: dict) -> None:
        if session.get("mode") != "subscription":
            logger.info(f"Checkout {session.get('id')} mode={session.get('mode')} — skipped")
            return

        ref = to_ref(session.get("subscription"))
        if ref is None:
            raise ValidationError("session did not contain subscription data")
        client_id = session.get("client_reference_id")
        if not client_id:
            raise ValidationError("checkout session missing client_reference_id")

        subscription = await self.billing.resolve_subscription(ref)
        user, record = await asyncio.gather(
            self.store.get(User, client_id),
            self.store.get_or_create(Subscription, "stripeId", subscription["id"]),
        )

        record.apply_stripe(subscription)
        record.user = user.id
        record.metadata.setdefault(CLIENT_ID_METADATA_KEY, user.id)
        await self.store.save(record)
        logger.info(f"New Stripe subscription: user={user.id} sub={record.stripe_id} status={record.status}")

        if self.sync_billing_address:
            await self._sync_billing_address(subscription, user)

    async def _sync_billing_address(self, subscription: dict, user: User) -> None:
        pm_ref = to_ref(subscription.get("default_payment_method"))
        if pm_ref is None:
            logger.warning(f"Subscription {subscription['id']} has no default payment method — address not synced")
            return
        payment_method = await self.billing.resolve_payment_method(pm_ref)
        details = payment_method.get("billing_details") or {}
        await self.store.save_billing_details(user.id, details.get("address"), details.get("phone"))


def _invoice_parent_subscription(invoice: dict) -> Any:
    """Newer API versions nest the subscription under invoice.parent."""
    parent = invoice.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")
