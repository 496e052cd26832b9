"""Data store records — typed mirrors of Stripe objects + Parse wire conversion.

Each record knows its Parse class name and how to project a Stripe payload
onto itself. Conversion to/from the Parse REST format lives here so adapters
never set arbitrary fields on untyped dicts.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Subscription statuses that grant access (portal, no checkout re-entry)
ACTIVE_STATUSES = frozenset({"active", "trialing", "incomplete"})

# Parse reserves these on every object
_PARSE_SYSTEM_FIELDS = frozenset({"objectId", "createdAt", "updatedAt", "ACL", "className", "__type"})


def is_subscription_active(status: Optional[str]) -> bool:
    return status in ACTIVE_STATUSES


def get_date(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert Stripe epoch seconds to an aware UTC datetime (None stays None)."""
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def encode_date(value: datetime) -> dict:
    """Parse Date type — ISO-8601 UTC with millisecond precision."""
    value = value.astimezone(timezone.utc)
    iso = value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    return {"__type": "Date", "iso": iso}


def decode_date(value: dict) -> datetime:
    return datetime.fromisoformat(value["iso"].replace("Z", "+00:00"))


def encode_pointer(class_name: str, object_id: str) -> dict:
    return {"__type": "Pointer", "className": class_name, "objectId": object_id}


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        kind = value.get("__type")
        if kind == "Date":
            return decode_date(value)
        if kind == "Pointer":
            return value.get("objectId")
    return value


# ── Stripe references ────────────────────────────────────────────────────────

class Reference(BaseModel):
    """A Stripe object known only by id."""

    id: str


class Expanded(BaseModel):
    """A Stripe object delivered inline (possibly only partially expanded)."""

    data: dict

    @property
    def id(self) -> str:
        return self.data["id"]


StripeRef = Union[Reference, Expanded]


def to_ref(value: Union[str, dict, None]) -> Optional[StripeRef]:
    """Wrap a Stripe field that is either a bare id or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return Reference(id=value)
    if isinstance(value, dict) and value.get("id"):
        return Expanded(data=value)
    return None


def stripe_id(value: Union[str, dict, None]) -> Optional[str]:
    ref = to_ref(value)
    return ref.id if ref else None


# ── Parse records ────────────────────────────────────────────────────────────

class ParseRecord(BaseModel):
    """Base for objects stored in a Parse class."""

    model_config = ConfigDict(populate_by_name=True)

    class_name: ClassVar[str] = ""
    # field name -> target Parse class, for pointer-valued fields
    pointers: ClassVar[dict[str, str]] = {}

    object_id: Optional[str] = Field(None, alias="objectId")

    @property
    def is_new(self) -> bool:
        return self.object_id is None

    @classmethod
    def from_parse(cls, data: dict):
        """Build a record from a Parse REST object."""
        decoded = {
            key: _decode_value(value)
            for key, value in data.items()
            if key not in _PARSE_SYSTEM_FIELDS or key == "objectId"
        }
        return cls.model_validate(decoded)

    def to_parse(self) -> dict:
        """Parse REST body for this record.

        New records omit unset fields; existing records unset them explicitly
        so the mirror never keeps a stale value.
        """
        body: dict[str, Any] = {}
        for name, field in type(self).model_fields.items():
            if name == "object_id":
                continue
            key = field.alias or name
            value = getattr(self, name)
            if value is None:
                if not self.is_new:
                    body[key] = {"__op": "Delete"}
                continue
            if name in self.pointers:
                body[key] = encode_pointer(self.pointers[name], value)
            elif isinstance(value, datetime):
                body[key] = encode_date(value)
            else:
                body[key] = value
        return body


class User(ParseRecord):
    """Identity record owned by the data store — read, rarely written."""

    class_name: ClassVar[str] = "_User"
    pointers: ClassVar[dict[str, str]] = {"subscription": "Subscription"}

    email: Optional[str] = None
    subscription: Optional[str] = None

    @property
    def id(self) -> str:
        return self.object_id or ""


class Product(ParseRecord):
    class_name: ClassVar[str] = "Product"

    stripe_id: Optional[str] = Field(None, alias="stripeId")
    active: Optional[bool] = None
    name: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    def apply_stripe(self, data: dict) -> "Product":
        self.stripe_id = data["id"]
        self.active = data.get("active")
        self.name = data.get("name")
        self.metadata = dict(data.get("metadata") or {})
        return self


class Price(ParseRecord):
    class_name: ClassVar[str] = "Price"

    stripe_id: Optional[str] = Field(None, alias="stripeId")
    active: Optional[bool] = None
    unit_amount: Optional[int] = Field(None, alias="unitAmount")
    currency: Optional[str] = None
    type: Optional[str] = None
    interval: Optional[str] = None
    interval_count: Optional[int] = Field(None, alias="intervalCount")
    metadata: dict[str, str] = Field(default_factory=dict)

    def apply_stripe(self, data: dict) -> "Price":
        recurring = data.get("recurring") or {}
        self.stripe_id = data["id"]
        self.active = data.get("active")
        self.unit_amount = data.get("unit_amount")
        self.currency = data.get("currency")
        self.type = data.get("type")
        self.interval = recurring.get("interval")
        self.interval_count = recurring.get("interval_count")
        self.metadata = dict(data.get("metadata") or {})
        return self


class Subscription(ParseRecord):
    """Local mirror of a Stripe subscription. Keyed by stripeId."""

    class_name: ClassVar[str] = "Subscription"
    pointers: ClassVar[dict[str, str]] = {"user": "_User"}

    stripe_id: Optional[str] = Field(None, alias="stripeId")
    stripe_customer_id: Optional[str] = Field(None, alias="stripeCustomerId")
    user: Optional[str] = None
    status: Optional[str] = None
    plan: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    cancel_at_period_end: Optional[bool] = Field(None, alias="cancelAtPeriodEnd")
    created: Optional[datetime] = None
    current_period_start: Optional[datetime] = Field(None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    ended_at: Optional[datetime] = Field(None, alias="endedAt")
    cancel_at: Optional[datetime] = Field(None, alias="cancelAt")
    canceled_at: Optional[datetime] = Field(None, alias="canceledAt")

    @property
    def is_active(self) -> bool:
        return is_subscription_active(self.status)

    def apply_stripe(self, data: dict) -> "Subscription":
        """Overwrite every mirrored field from a fully-resolved Stripe subscription.

        `user` is left alone; only checkout completion links a user.
        """
        product = ((data.get("plan") or {}).get("product"))
        self.stripe_id = data["id"]
        self.stripe_customer_id = stripe_id(data.get("customer"))
        self.status = data.get("status")
        self.plan = product.get("name") if isinstance(product, dict) else None
        self.metadata = dict(data.get("metadata") or {})
        self.cancel_at_period_end = data.get("cancel_at_period_end")
        self.created = get_date(data.get("created"))
        self.current_period_start = get_date(data.get("current_period_start"))
        self.current_period_end = get_date(data.get("current_period_end"))
        self.ended_at = get_date(data.get("ended_at"))
        self.cancel_at = get_date(data.get("cancel_at"))
        self.canceled_at = get_date(data.get("canceled_at"))
        return self
