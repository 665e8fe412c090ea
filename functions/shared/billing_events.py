"""
Typed model for Stripe webhook events.

data.object changes shape with the event type, so every category the
pipeline acts on gets its own event class carrying a parsed payload.
Types we don't act on parse to UnrecognizedEvent rather than failing.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from shared.constants import (
    EVENT_INVOICE_PAID,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
)
from shared.errors import MalformedEventError


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an ID string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


@dataclass(frozen=True)
class SubscriptionPayload:
    """The fields of a Stripe Subscription object the pipeline reads."""

    id: str
    customer_id: Optional[str]
    status: Optional[str]
    price_id: Optional[str]
    metadata: dict
    current_period_start: Optional[int]
    current_period_end: Optional[int]
    cancel_at_period_end: bool = False
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    canceled_at: Optional[int] = None
    cancel_at: Optional[int] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId") or None

    @property
    def selected_apps(self) -> list[str]:
        """App IDs from metadata.selectedApps (comma-separated). Empty means all apps."""
        raw = self.metadata.get("selectedApps") or ""
        return [app.strip() for app in raw.split(",") if app.strip()]

    @classmethod
    def from_stripe(cls, obj: dict) -> "SubscriptionPayload":
        # Newer Stripe API versions moved the billing period onto the items
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        return cls(
            id=obj.get("id") or "",
            customer_id=_object_id(obj.get("customer")),
            status=obj.get("status"),
            price_id=price.get("id"),
            metadata=dict(obj.get("metadata") or {}),
            current_period_start=obj.get("current_period_start") or first_item.get("current_period_start"),
            current_period_end=obj.get("current_period_end") or first_item.get("current_period_end"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            trial_start=obj.get("trial_start"),
            trial_end=obj.get("trial_end"),
            canceled_at=obj.get("canceled_at"),
            cancel_at=obj.get("cancel_at"),
        )


@dataclass(frozen=True)
class InvoicePayload:
    """The fields of a Stripe Invoice object the pipeline reads."""

    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_paid: int
    currency: Optional[str]

    @classmethod
    def from_stripe(cls, obj: dict) -> "InvoicePayload":
        subscription_id = _object_id(obj.get("subscription"))
        if not subscription_id:
            # 2025+ API versions: invoice.parent.subscription_details.subscription
            details = (obj.get("parent") or {}).get("subscription_details") or {}
            subscription_id = _object_id(details.get("subscription"))

        return cls(
            id=obj.get("id") or "",
            customer_id=_object_id(obj.get("customer")),
            subscription_id=subscription_id,
            amount_paid=int(obj.get("amount_paid") or 0),
            currency=obj.get("currency"),
        )


@dataclass(frozen=True)
class BillingEvent:
    """Envelope fields common to every Stripe event."""

    id: str
    type: str
    created: int
    livemode: bool
    raw: dict = field(repr=False, compare=False)


@dataclass(frozen=True)
class SubscriptionChanged(BillingEvent):
    """customer.subscription.created / customer.subscription.updated"""

    subscription: SubscriptionPayload

    @property
    def is_creation(self) -> bool:
        return self.type == EVENT_SUBSCRIPTION_CREATED


@dataclass(frozen=True)
class SubscriptionDeleted(BillingEvent):
    """customer.subscription.deleted"""

    subscription: SubscriptionPayload


@dataclass(frozen=True)
class InvoicePaymentSucceeded(BillingEvent):
    """invoice.payment_succeeded / invoice.paid"""

    invoice: InvoicePayload


@dataclass(frozen=True)
class InvoicePaymentFailed(BillingEvent):
    """invoice.payment_failed"""

    invoice: InvoicePayload


@dataclass(frozen=True)
class UnrecognizedEvent(BillingEvent):
    """Any event type the pipeline does not act on."""


_SUBSCRIPTION_EVENTS = {
    EVENT_SUBSCRIPTION_CREATED: SubscriptionChanged,
    EVENT_SUBSCRIPTION_UPDATED: SubscriptionChanged,
    EVENT_SUBSCRIPTION_DELETED: SubscriptionDeleted,
}

_INVOICE_EVENTS = {
    EVENT_PAYMENT_SUCCEEDED: InvoicePaymentSucceeded,
    EVENT_INVOICE_PAID: InvoicePaymentSucceeded,
    EVENT_PAYMENT_FAILED: InvoicePaymentFailed,
}


def parse_event(envelope: Any) -> BillingEvent:
    """Build the typed event for a decoded Stripe event envelope.

    Raises:
        MalformedEventError: envelope lacks id, type or data.object
    """
    if not isinstance(envelope, dict):
        raise MalformedEventError("Event body is not a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    data_object = (envelope.get("data") or {}).get("object")

    if not isinstance(event_id, str) or not event_id:
        raise MalformedEventError("Event is missing an id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event is missing a type")
    if not isinstance(data_object, dict):
        raise MalformedEventError("Event is missing data.object")

    common = {
        "id": event_id,
        "type": event_type,
        "created": int(envelope.get("created") or 0),
        "livemode": bool(envelope.get("livemode", False)),
        "raw": envelope,
    }

    if event_type in _SUBSCRIPTION_EVENTS:
        return _SUBSCRIPTION_EVENTS[event_type](
            **common, subscription=SubscriptionPayload.from_stripe(data_object)
        )
    if event_type in _INVOICE_EVENTS:
        return _INVOICE_EVENTS[event_type](**common, invoice=InvoicePayload.from_stripe(data_object))
    return UnrecognizedEvent(**common)
