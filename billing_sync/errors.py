"""
Billing errors.

Every failure raised by the adapters, the webhook engine and the routes is a
BillingError carrying the HTTP status it maps to at the boundary.
"""
from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base exception for all billing-sync errors."""

    status_code = 500
    code = "billing_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Error envelope returned to HTTP callers."""
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, status_code={self.status_code})"


class ValidationError(BillingError):
    """Malformed request body or missing required field."""

    status_code = 400
    code = "validation_error"


class AuthError(BillingError):
    """Missing/invalid session token, or caller not allowed."""

    status_code = 401
    code = "auth_error"


class ConflictError(BillingError):
    """Caller already holds an active subscription."""

    status_code = 400
    code = "conflict"


class NotFoundError(BillingError):
    """Referenced user/subscription absent in the data store."""

    status_code = 404
    code = "not_found"


class SignatureError(BillingError):
    """Webhook signature invalid or absent."""

    status_code = 400
    code = "invalid_signature"


class UpstreamError(BillingError):
    """Stripe or the data store failed."""

    status_code = 500
    code = "upstream_error"


class UnhandledEventError(BillingError):
    """Relevant event type with no handler."""

    status_code = 400
    code = "unhandled_event"
