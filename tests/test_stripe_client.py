"""Tests for the Stripe billing client — sessions, subscription resolution, signatures."""
from __future__ import annotations

import time

import pytest

from billing_sync.errors import SignatureError, UpstreamError, ValidationError
from billing_sync.models.records import Expanded, Reference
from conftest import make_stripe_signature, subscription_payload


# ── Stripe Signature Verification ────────────────────────────────────────────

class TestStripeSignature:
    @pytest.mark.asyncio
    async def test_valid_signature(self, billing):
        payload = b'{"id": "evt_1", "type": "product.created", "data": {"object": {}}}'
        event = billing.verify_and_parse_event(payload, make_stripe_signature(payload))
        assert event["type"] == "product.created"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejects(self, billing):
        payload = b'{"type": "test"}'
        with pytest.raises(SignatureError):
            billing.verify_and_parse_event(payload, make_stripe_signature(payload, "whsec_other"))

    @pytest.mark.asyncio
    async def test_undecodable_body_rejects(self, billing):
        with pytest.raises(SignatureError, match="encoding"):
            billing.verify_and_parse_event(b"\xff\xfe{bad", "t=1,v1=abc")

    @pytest.mark.asyncio
    async def test_garbage_header_rejects(self, billing):
        with pytest.raises(SignatureError):
            billing.verify_and_parse_event(b'{"type":"test"}', "t=123,v1=bad")

    @pytest.mark.asyncio
    async def test_missing_header_rejects(self, billing):
        with pytest.raises(SignatureError, match="stripe-signature"):
            billing.verify_and_parse_event(b'{"type":"test"}', None)

    @pytest.mark.asyncio
    async def test_old_timestamp_rejects(self, billing):
        payload = b'{"type": "test"}'
        sig = make_stripe_signature(payload, timestamp=int(time.time()) - 600)
        with pytest.raises(SignatureError):
            billing.verify_and_parse_event(payload, sig)

    @pytest.mark.asyncio
    async def test_tampered_body_rejects(self, billing):
        payload = b'{"type": "test"}'
        sig = make_stripe_signature(payload)
        with pytest.raises(SignatureError):
            billing.verify_and_parse_event(b'{"type": "test2"}', sig)

    @pytest.mark.asyncio
    async def test_signed_non_event_is_validation_error(self, billing):
        payload = b'["not", "an", "event"]'
        with pytest.raises(ValidationError):
            billing.verify_and_parse_event(payload, make_stripe_signature(payload))


# ── Sessions ─────────────────────────────────────────────────────────────────

class TestSessions:
    @pytest.mark.asyncio
    async def test_checkout_session_params(self, billing, stripe_api):
        url = await billing.create_checkout_session(
            price_id="price_123",
            customer_email="a@example.com",
            client_reference_id="user_1",
            success_url="https://app.example.com/welcome",
            cancel_url="https://app.example.com/",
        )
        assert url.startswith("https://checkout.stripe.com/")
        form = stripe_api.checkout_sessions[-1]
        assert form["mode"] == "subscription"
        assert form["line_items[0][price]"] == "price_123"
        assert form["line_items[0][quantity]"] == "1"
        assert form["client_reference_id"] == "user_1"
        assert form["subscription_data[metadata][clientId]"] == "user_1"
        assert form["customer_email"] == "a@example.com"
        assert form["billing_address_collection"] == "required"
        request = stripe_api.requests[-1]
        assert request.headers["Authorization"] == "Bearer sk_test_123"
        assert request.headers["Stripe-Version"] == "2024-06-20"

    @pytest.mark.asyncio
    async def test_unknown_price_is_client_error(self, billing):
        with pytest.raises(UpstreamError) as exc:
            await billing.create_checkout_session("price_nope", None, "user_1", "https://a/", "https://a/")
        assert exc.value.status_code == 400
        assert "price_nope" in exc.value.message

    @pytest.mark.asyncio
    async def test_portal_session(self, billing, stripe_api):
        url = await billing.create_portal_session("cus_123", "https://app.example.com/account")
        assert url.startswith("https://billing.stripe.com/")
        assert stripe_api.portal_sessions[-1] == {
            "customer": "cus_123",
            "return_url": "https://app.example.com/account",
        }


# ── Subscriptions ────────────────────────────────────────────────────────────

class TestResolveSubscription:
    @pytest.mark.asyncio
    async def test_reference_is_fetched_with_product_expanded(self, billing, stripe_api):
        stripe_api.subscriptions["sub_123"] = subscription_payload()
        sub = await billing.resolve_subscription(Reference(id="sub_123"))
        assert sub["plan"]["product"]["name"] == "Pro Plan"
        request = stripe_api.requests[-1]
        assert request.method == "GET"
        assert request.url.params.get_list("expand[]") == ["plan.product"]

    @pytest.mark.asyncio
    async def test_fully_expanded_object_is_used_inline(self, billing, stripe_api):
        sub = await billing.resolve_subscription(Expanded(data=subscription_payload()))
        assert sub["id"] == "sub_123"
        assert stripe_api.requests == []

    @pytest.mark.asyncio
    async def test_shallow_object_is_refetched(self, billing, stripe_api):
        stripe_api.subscriptions["sub_123"] = subscription_payload()
        shallow = subscription_payload(product="prod_123")
        sub = await billing.resolve_subscription(Expanded(data=shallow))
        assert sub["plan"]["product"]["name"] == "Pro Plan"
        assert len(stripe_api.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_subscription(self, billing):
        with pytest.raises(UpstreamError):
            await billing.resolve_subscription(Reference(id="sub_gone"))

    @pytest.mark.asyncio
    async def test_update_cancel_at_period_end(self, billing, stripe_api):
        stripe_api.subscriptions["sub_123"] = subscription_payload()
        updated = await billing.update_subscription("sub_123", cancel_at_period_end=True)
        assert updated["cancel_at_period_end"] is True
        assert stripe_api.requests[-1].content.decode() == "cancel_at_period_end=true"


class TestResolvePaymentMethod:
    @pytest.mark.asyncio
    async def test_reference_is_fetched(self, billing, stripe_api):
        stripe_api.payment_methods["pm_1"] = {"id": "pm_1", "billing_details": {"phone": "+1"}}
        pm = await billing.resolve_payment_method(Reference(id="pm_1"))
        assert pm["billing_details"]["phone"] == "+1"

    @pytest.mark.asyncio
    async def test_inline_with_billing_details(self, billing, stripe_api):
        pm = await billing.resolve_payment_method(Expanded(data={"id": "pm_1", "billing_details": {}}))
        assert pm["id"] == "pm_1"
        assert stripe_api.requests == []

