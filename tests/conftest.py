"""Shared test fixtures — in-memory Parse server + Stripe API behind httpx MockTransport."""
from __future__ import annotations

import hashlib
import hmac
import itertools
import json
import time
from collections import defaultdict
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config.settings import settings
from billing_sync.api.deps import get_billing, get_store, get_webhook_processor
from billing_sync.api.main import app
from billing_sync.middleware.metrics import metrics
from billing_sync.services.parse_store import ParseStore
from billing_sync.services.stripe_client import StripeClient
from billing_sync.services.webhooks import WebhookProcessor

WEBHOOK_SECRET = "whsec_test"
PARSE_URL = "https://parse.test"
STRIPE_URL = "https://stripe.test"
CALLBACK_URL = "https://app.example.com"
DEFAULT_PRICE_ID = "price_default"


def make_stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Generate a valid Stripe webhook signature."""
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signed = f"{ts}.{payload.decode()}"
    sig = hmac.new(secret.encode(), signed.encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type: str, data: dict, event_id: str = "evt_test_1") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": data}}


def subscription_payload(
    sub_id: str = "sub_123",
    status: str = "active",
    customer: str | dict = "cus_123",
    product: str | dict | None = None,
    **overrides,
) -> dict:
    """Stripe subscription as returned with plan.product expanded."""
    if product is None:
        product = {"id": "prod_123", "object": "product", "name": "Pro Plan"}
    data = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": {"clientId": "user_1"},
        "cancel_at_period_end": False,
        "created": 1700000000,
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "ended_at": None,
        "cancel_at": None,
        "canceled_at": None,
        "default_payment_method": "pm_123",
        "plan": {"id": "price_123", "object": "plan", "product": product},
    }
    data.update(overrides)
    return data


# ── Fake Parse server ─────────────────────────────────────────────────────────

class FakeParseServer:
    """Just enough of the Parse REST API for the store adapter."""

    def __init__(self):
        self.objects: dict[str, dict[str, dict]] = defaultdict(dict)
        self.sessions: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.fail_writes = False
        self.unavailable: set[str] = set()
        self._ids = itertools.count(1)

    def add(self, class_name: str, **fields) -> str:
        oid = fields.pop("objectId", None) or f"obj{next(self._ids)}"
        self.objects[class_name][oid] = {"objectId": oid, **fields}
        return oid

    def add_user(self, user_id: str, email: str, session_token: str | None = None) -> str:
        self.add("_User", objectId=user_id, email=email, username=email)
        if session_token:
            self.sessions[session_token] = user_id
        return user_id

    def find(self, class_name: str, **where) -> list[dict]:
        return [o for o in self.objects[class_name].values() if all(o.get(k) == v for k, v in where.items())]

    @property
    def writes(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method != "GET"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")
        if parts[0] == "users":
            class_name, rest = "_User", parts[1:]
            if rest == ["me"]:
                user_id = self.sessions.get(request.headers.get("X-Parse-Session-Token", ""))
                if user_id is None:
                    return httpx.Response(400, json={"code": 209, "error": "Invalid session token"})
                return httpx.Response(200, json=self.objects["_User"][user_id])
        else:
            class_name, rest = parts[1], parts[2:]

        if class_name in self.unavailable:
            return httpx.Response(500, json={"code": 1, "error": "Internal server error."})
        if request.method != "GET" and self.fail_writes:
            return httpx.Response(500, json={"code": 1, "error": "Internal server error."})

        table = self.objects[class_name]
        if not rest:
            if request.method == "GET":
                where = json.loads(request.url.params.get("where", "{}"))
                limit = int(request.url.params.get("limit", "100"))
                results = [o for o in table.values() if all(o.get(k) == v for k, v in where.items())]
                return httpx.Response(200, json={"results": results[:limit]})
            body = json.loads(request.content)
            oid = f"obj{next(self._ids)}"
            table[oid] = {"objectId": oid, **body}
            return httpx.Response(201, json={"objectId": oid, "createdAt": "2024-01-01T00:00:00.000Z"})

        oid = rest[0]
        if oid not in table:
            return httpx.Response(404, json={"code": 101, "error": "Object not found."})
        if request.method == "GET":
            return httpx.Response(200, json=table[oid])
        if request.method == "PUT":
            for key, value in json.loads(request.content).items():
                if isinstance(value, dict) and value.get("__op") == "Delete":
                    table[oid].pop(key, None)
                else:
                    table[oid][key] = value
            return httpx.Response(200, json={"updatedAt": "2024-01-01T00:00:00.000Z"})
        del table[oid]
        return httpx.Response(200, json={})


# ── Fake Stripe API ───────────────────────────────────────────────────────────

class FakeStripeAPI:
    """Checkout/portal sessions, subscriptions and payment methods."""

    def __init__(self):
        self.prices = {"price_123", DEFAULT_PRICE_ID}
        self.subscriptions: dict[str, dict] = {}
        self.payment_methods: dict[str, dict] = {}
        self.checkout_sessions: list[dict] = []
        self.portal_sessions: list[dict] = []
        self.requests: list[httpx.Request] = []

    def _form(self, request: httpx.Request) -> dict:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    @staticmethod
    def _missing(what: str) -> httpx.Response:
        return httpx.Response(404, json={"error": {"type": "invalid_request_error", "message": f"No such {what}"}})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/v1/checkout/sessions":
            form = self._form(request)
            if form.get("line_items[0][price]") not in self.prices:
                return httpx.Response(400, json={"error": {
                    "type": "invalid_request_error",
                    "message": f"No such price: '{form.get('line_items[0][price]')}'",
                }})
            self.checkout_sessions.append(form)
            sid = f"cs_test_{len(self.checkout_sessions)}"
            return httpx.Response(200, json={"id": sid, "url": f"https://checkout.stripe.com/c/pay/{sid}"})

        if path == "/v1/billing_portal/sessions":
            self.portal_sessions.append(self._form(request))
            return httpx.Response(200, json={"id": "bps_1", "url": "https://billing.stripe.com/p/session/test_1"})

        if path.startswith("/v1/subscriptions/"):
            sub_id = path.rsplit("/", 1)[1]
            sub = self.subscriptions.get(sub_id)
            if sub is None:
                return self._missing("subscription")
            if request.method == "POST":
                sub["cancel_at_period_end"] = self._form(request)["cancel_at_period_end"] == "true"
            return httpx.Response(200, json=sub)

        if path.startswith("/v1/payment_methods/"):
            pm = self.payment_methods.get(path.rsplit("/", 1)[1])
            return httpx.Response(200, json=pm) if pm else self._missing("payment_method")

        return httpx.Response(404, json={"error": {"message": "Unrecognized request URL"}})


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "CALLBACK_URL", CALLBACK_URL)
    monkeypatch.setattr(settings, "STRIPE_DEFAULT_SUBSCRIBE_PRICE_ID", DEFAULT_PRICE_ID)
    metrics.reset()
    yield


@pytest.fixture
def parse_server() -> FakeParseServer:
    return FakeParseServer()


@pytest.fixture
def stripe_api() -> FakeStripeAPI:
    return FakeStripeAPI()


@pytest_asyncio.fixture
async def store(parse_server):
    s = ParseStore(
        PARSE_URL, "app-id", "rest-key", "master-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(parse_server)),
    )
    yield s
    await s.close()


@pytest_asyncio.fixture
async def billing(stripe_api):
    b = StripeClient(
        "sk_test_123", WEBHOOK_SECRET,
        api_base=STRIPE_URL,
        api_version="2024-06-20",
        client=httpx.AsyncClient(transport=httpx.MockTransport(stripe_api)),
    )
    yield b
    await b.close()


@pytest.fixture
def processor(store, billing) -> WebhookProcessor:
    return WebhookProcessor(store, billing)


@pytest_asyncio.fixture
async def client(store, billing, processor):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_billing] = lambda: billing
    app.dependency_overrides[get_webhook_processor] = lambda: processor
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def post_event(client):
    """POST a signed Stripe event to /webhooks."""

    async def _post(event: dict, secret: str = WEBHOOK_SECRET) -> httpx.Response:
        payload = json.dumps(event).encode()
        return await client.post(
            "/webhooks",
            content=payload,
            headers={"stripe-signature": make_stripe_signature(payload, secret), "content-type": "application/json"},
        )

    return _post
