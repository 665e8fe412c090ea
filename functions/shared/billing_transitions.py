"""
Subscription state transitions for Stripe webhook events.

Each handler turns one typed event into a BillingWriteSet: the bounded set of
field writes for the user's subscription record and the billing projection on
the user record. Handlers never write; subscription_store applies the set as
a single transaction.

    trialing -> active -> past_due -> active (recovery)
    trialing/active/past_due -> canceled/expired
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import stripe

from shared.billing_events import (
    BillingEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
)
from shared.billing_utils import (
    query_limit_for_tier,
    status_for_processor_status,
    tier_for_price_id,
)
from shared.constants import (
    EVENT_INVOICE_PAID,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    STATUS_EXPIRED,
    STATUS_PAST_DUE,
)
from shared.errors import TransientProcessingError, ValidationError
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)

# Retries inside the stripe library for connection errors and 5xx/429
stripe.max_network_retries = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))


@dataclass
class SubscriptionWrite:
    """Field writes for the subscription record."""

    fields: dict
    # Written only when the record is created (usage counters, limits)
    seed_fields: Optional[dict] = None
    # A created event finding a canceled/expired record starts a fresh one
    replace_terminal: bool = False
    # Never move a canceled/expired record (late payment failures)
    reject_terminal: bool = False
    # Apply only while the record still tracks this Stripe subscription
    match_subscription_id: Optional[str] = None

    @property
    def may_create(self) -> bool:
        return self.seed_fields is not None


@dataclass
class UserWrite:
    """Field writes for the billing projection on the user record."""

    fields: dict
    # Numeric attribute holding the Stripe event time of the last write of this kind
    ordering_attribute: Optional[str] = None


@dataclass
class BillingWriteSet:
    """Everything one event changes for one user."""

    user_id: str
    event_id: str
    event_created: int
    user: UserWrite
    subscription: Optional[SubscriptionWrite] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _compact(values: dict) -> dict:
    """Drop None values so absent Stripe fields don't overwrite stored ones."""
    return {k: v for k, v in values.items() if v is not None}


def _require_user_id(user_id: Optional[str], subscription_id: str) -> str:
    if not user_id:
        raise ValidationError(f"Missing userId in subscription metadata ({subscription_id or 'unknown'})")
    return user_id


def handle_subscription_change(event: SubscriptionChanged) -> BillingWriteSet:
    """customer.subscription.created / updated: derive status, tier and billing period."""
    sub = event.subscription
    user_id = _require_user_id(sub.user_id, sub.id)

    tier = tier_for_price_id(sub.price_id)
    status = status_for_processor_status(sub.status)
    subscribed_apps = sub.selected_apps
    now_iso = _now().isoformat()

    subscription_fields = _compact(
        {
            "user_id": user_id,
            "stripe_customer_id": sub.customer_id,
            "stripe_subscription_id": sub.id,
            "stripe_price_id": sub.price_id or "",
            "status": status,
            "tier": tier,
            "subscribed_apps": subscribed_apps,
            "current_period_start": sub.current_period_start,
            "current_period_end": sub.current_period_end,
            "cancel_at_period_end": sub.cancel_at_period_end,
            "canceled_at": sub.canceled_at,
            "cancel_at": sub.cancel_at,
            "updated_at": now_iso,
        }
    )

    # Trial dates only when both markers are present
    if sub.trial_start and sub.trial_end:
        subscription_fields["trial_start_date"] = sub.trial_start
        subscription_fields["trial_end_date"] = sub.trial_end

    seed_fields = {
        "current_month_usage": {
            "queries": 0,
            "tokens": 0,
            "cost": Decimal("0"),
            "last_reset": now_iso,
        },
        "monthly_query_limit": query_limit_for_tier(tier),
        "created_at": now_iso,
    }

    user_fields = _compact(
        {
            "subscription_status": status,
            "subscription_tier": tier,
            "stripe_customer_id": sub.customer_id,
            "stripe_subscription_id": sub.id,
            "subscription_expires_at": sub.current_period_end,
            "updated_at": now_iso,
        }
    )
    if subscribed_apps:
        user_fields["subscribed_apps"] = subscribed_apps

    logger.info(
        f"Subscription {sub.status} for user {user_id}: status={status}, tier={tier}, "
        f"cancel_at_period_end={sub.cancel_at_period_end}, "
        f"period={sub.current_period_start}-{sub.current_period_end}"
    )

    return BillingWriteSet(
        user_id=user_id,
        event_id=event.id,
        event_created=event.created,
        subscription=SubscriptionWrite(
            fields=subscription_fields,
            seed_fields=seed_fields,
            replace_terminal=event.is_creation,
        ),
        user=UserWrite(fields=user_fields),
    )


def handle_subscription_deleted(event: SubscriptionDeleted) -> BillingWriteSet:
    """customer.subscription.deleted: expire the subscription, keep its history.

    Tier, usage and Stripe identifiers are left as they were.
    """
    sub = event.subscription
    user_id = _require_user_id(sub.user_id, sub.id)
    now = _now()

    logger.info(f"Subscription {sub.id} deleted for user {user_id}")

    return BillingWriteSet(
        user_id=user_id,
        event_id=event.id,
        event_created=event.created,
        subscription=SubscriptionWrite(
            fields={
                "status": STATUS_EXPIRED,
                "canceled_at": int(now.timestamp()),
                "updated_at": now.isoformat(),
            },
            match_subscription_id=sub.id,
        ),
        user=UserWrite(
            fields={
                "subscription_status": STATUS_EXPIRED,
                "updated_at": now.isoformat(),
            },
        ),
    )


def lookup_subscription_owner(subscription_id: str) -> str:
    """Resolve the user ID from a Stripe subscription's metadata.

    Raises:
        TransientProcessingError: Stripe unreachable, rate limited or erroring
        ValidationError: subscription unknown to Stripe or has no userId
    """
    start = time.time()
    try:
        subscription = stripe.Subscription.retrieve(subscription_id)
    except stripe.InvalidRequestError as e:
        log_external_call(logger, "stripe", "Subscription.retrieve", False, (time.time() - start) * 1000, str(e))
        raise ValidationError(f"Stripe subscription {subscription_id} could not be retrieved: {e}") from e
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "Subscription.retrieve", False, (time.time() - start) * 1000, str(e))
        raise TransientProcessingError(f"Stripe lookup failed for {subscription_id}: {e}") from e

    log_external_call(logger, "stripe", "Subscription.retrieve", True, (time.time() - start) * 1000)

    # Newer SDKs return a StripeObject that is not a dict: item access only
    metadata = subscription["metadata"] if "metadata" in subscription else None
    user_id = metadata["userId"] if metadata is not None and "userId" in metadata else None
    return _require_user_id(user_id, subscription_id)


def handle_payment_succeeded(event: InvoicePaymentSucceeded) -> Optional[BillingWriteSet]:
    """invoice.payment_succeeded: record the payment on the user.

    Status and tier are left alone; only subscription events drive those.
    """
    invoice = event.invoice
    if not invoice.subscription_id:
        logger.info(f"Invoice {invoice.id} not associated with a subscription, skipping")
        return None

    user_id = lookup_subscription_owner(invoice.subscription_id)
    amount = Decimal(invoice.amount_paid) / Decimal(100)
    now_iso = _now().isoformat()

    logger.info(f"Payment succeeded for user {user_id}: {amount} {invoice.currency}")

    return BillingWriteSet(
        user_id=user_id,
        event_id=event.id,
        event_created=event.created,
        user=UserWrite(
            fields={
                "last_payment_date": now_iso,
                "last_payment_amount": amount,
                "last_payment_event_created": event.created,
                "updated_at": now_iso,
            },
            ordering_attribute="last_payment_event_created",
        ),
    )


def handle_payment_failed(event: InvoicePaymentFailed) -> Optional[BillingWriteSet]:
    """invoice.payment_failed: mark the subscription past due."""
    invoice = event.invoice
    if not invoice.subscription_id:
        logger.info(f"Invoice {invoice.id} not associated with a subscription, skipping")
        return None

    user_id = lookup_subscription_owner(invoice.subscription_id)
    now_iso = _now().isoformat()

    logger.warning(f"Payment failed for user {user_id} (invoice {invoice.id})")

    return BillingWriteSet(
        user_id=user_id,
        event_id=event.id,
        event_created=event.created,
        subscription=SubscriptionWrite(
            fields={"status": STATUS_PAST_DUE, "updated_at": now_iso},
            reject_terminal=True,
            match_subscription_id=invoice.subscription_id,
        ),
        user=UserWrite(fields={"subscription_status": STATUS_PAST_DUE, "updated_at": now_iso}),
    )


EVENT_HANDLERS: dict[str, Callable[..., Optional[BillingWriteSet]]] = {
    EVENT_SUBSCRIPTION_CREATED: handle_subscription_change,
    EVENT_SUBSCRIPTION_UPDATED: handle_subscription_change,
    EVENT_SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EVENT_PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EVENT_INVOICE_PAID: handle_payment_succeeded,
    EVENT_PAYMENT_FAILED: handle_payment_failed,
}


def dispatch(event: BillingEvent) -> Optional[BillingWriteSet]:
    """Route an event to its handler.

    Returns None for event types we don't act on and for events that need no
    writes. Unrecognized types are never an error: Stripe would retry them forever.
    """
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.info(f"Unhandled event type: {event.type}")
        return None
    return handler(event)
