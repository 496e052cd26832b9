"""FastAPI dependencies — collaborators live on app.state, built in the lifespan.

Tests swap any of these through `app.dependency_overrides`.
"""
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from billing_sync.errors import AuthError
from billing_sync.models.records import User
from billing_sync.services.parse_store import ParseStore
from billing_sync.services.stripe_client import StripeClient
from billing_sync.services.webhooks import WebhookProcessor


def get_store(request: Request) -> ParseStore:
    return request.app.state.store


def get_billing(request: Request) -> StripeClient:
    return request.app.state.billing


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


async def get_current_user(
    x_parse_session_token: Optional[str] = Header(None),
    store: ParseStore = Depends(get_store),
) -> User:
    """Resolve the caller from their Parse session token. Raises AuthError."""
    if not x_parse_session_token:
        raise AuthError("user not logged in")
    return await store.current_user(x_parse_session_token)
