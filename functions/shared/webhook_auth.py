"""
Stripe webhook signature verification.

Nothing else in the pipeline may run until verify_webhook() returns: a
forged event could otherwise grant or revoke paid entitlements.
"""

import json
import logging
import os

import stripe

from shared.billing_events import BillingEvent, parse_event
from shared.errors import AuthenticationError, MalformedEventError

logger = logging.getLogger(__name__)

# Maximum age of the signed timestamp, protects against replayed requests
STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))


def verify_webhook(payload: str | bytes, sig_header: str | None, webhook_secret: str) -> BillingEvent:
    """Authenticate a webhook body and return the typed event.

    Args:
        payload: Raw request body exactly as received
        sig_header: Value of the Stripe-Signature header
        webhook_secret: Endpoint signing secret (whsec_...)

    Raises:
        AuthenticationError: header missing or signature invalid
        MalformedEventError: authenticated body is not an event envelope
    """
    if not sig_header:
        logger.warning("Missing Stripe signature")
        raise AuthenticationError("Missing Stripe signature", code="missing_signature")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning(f"Webhook body is not valid UTF-8: {e}")
            raise AuthenticationError() from e

    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, tolerance=STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        raise AuthenticationError() from e

    try:
        envelope = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.error(f"Signed webhook body is not JSON: {e}")
        raise MalformedEventError() from e

    return parse_event(envelope)
