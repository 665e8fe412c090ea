"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Applies Stripe billing events to subscription state exactly once.
Uses Stripe signature verification instead of API key auth.

Response contract with Stripe:
- 200: applied, already applied, stale, or an event type we don't act on
- 400: missing/invalid signature or malformed envelope (never retried)
- 409: the same event is being processed right now (Stripe retries later)
- 500: processing failed after authentication (Stripe retries)
"""

import base64
import logging
import os

import stripe
from botocore.exceptions import ClientError

from shared import webhook_ledger
from shared.billing_events import BillingEvent
from shared.billing_transitions import dispatch
from shared.billing_utils import get_stripe_secrets
from shared.constants import (
    OUTCOME_APPLIED,
    OUTCOME_IGNORED,
    OUTCOME_STALE,
    POLICY_ACKNOWLEDGE,
    POLICY_RETRY,
)
from shared.errors import (
    AuthenticationError,
    MalformedEventError,
    StaleEventError,
    TransientProcessingError,
    ValidationError,
)
from shared.logging_utils import configure_structured_logging, set_event_id, set_request_id
from shared.metrics import emit_webhook_metric
from shared.response_utils import error_response, json_response, received_response
from shared.subscription_store import apply_write_set
from shared.types import APIGatewayEvent, LambdaContext, LambdaResponse
from shared.webhook_auth import verify_webhook

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# What to tell Stripe when an event can never succeed (e.g. metadata.userId missing):
#   retry       - 500, Stripe keeps retrying until the data is fixed upstream
#   acknowledge - 200, retries stop; the ledger keeps the error for manual follow-up
VALIDATION_FAILURE_POLICY = os.environ.get("VALIDATION_FAILURE_POLICY", POLICY_RETRY)

IN_PROGRESS_RETRY_AFTER = 60


def _get_body(event: APIGatewayEvent) -> str | bytes:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    return body


def _get_signature(event: APIGatewayEvent) -> str | None:
    headers = event.get("headers") or {}
    for name, value in headers.items():
        if name.lower() == "stripe-signature":
            return value
    return None


def handler(event: APIGatewayEvent, context: LambdaContext) -> LambdaResponse:
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - customer.subscription.created / updated: set status, tier and billing period
    - customer.subscription.deleted: expire the subscription
    - invoice.payment_succeeded / invoice.paid: record last payment
    - invoice.payment_failed: mark subscription past due
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()

    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    stripe.api_key = stripe_api_key

    try:
        billing_event = verify_webhook(_get_body(event), _get_signature(event), webhook_secret)
    except (AuthenticationError, MalformedEventError) as e:
        emit_webhook_metric("rejected")
        return e.to_response()

    return process_billing_event(billing_event)


def process_billing_event(billing_event: BillingEvent, validation_policy: str | None = None) -> dict:
    """Run an authenticated event through the ledger, handlers and store.

    Shared by the Lambda handler and the replay script.
    """
    set_event_id(billing_event.id)
    event_type = billing_event.type
    policy = validation_policy or VALIDATION_FAILURE_POLICY

    logger.info(f"Processing Stripe event: {event_type} (id={billing_event.id})")

    try:
        registration = webhook_ledger.check_and_register(billing_event)
    except ClientError as e:
        logger.error(f"Failed to register event {billing_event.id}: {e}")
        emit_webhook_metric("transient", event_type)
        return error_response(500, "temporary_error", "Temporary error, please retry")

    if registration.already_processed:
        logger.info(f"Skipping duplicate event {billing_event.id}")
        emit_webhook_metric("duplicate", event_type)
        return received_response(duplicate=True)

    if registration.in_progress:
        logger.warning(f"Event {billing_event.id} is being processed by another invocation")
        emit_webhook_metric("in_progress", event_type)
        return error_response(
            409,
            "event_in_progress",
            "Event is already being processed, please retry",
            retry_after=IN_PROGRESS_RETRY_AFTER,
        )

    try:
        write_set = dispatch(billing_event)
        if write_set is None:
            outcome = OUTCOME_IGNORED
        else:
            apply_write_set(write_set)
            outcome = OUTCOME_APPLIED
    except StaleEventError as e:
        logger.warning(f"Ignoring stale {event_type}: {e.message}")
        outcome = OUTCOME_STALE
    except ValidationError as e:
        logger.error(f"Permanent error handling {event_type}: {e.message}")
        return _handle_validation_failure(billing_event, e, policy)
    except TransientProcessingError as e:
        logger.error(f"Transient error handling {event_type}: {e.message}")
        _record_failure(billing_event, e.message, e.kind)
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except ClientError as e:
        # DynamoDB errors are transient
        logger.error(f"Transient DynamoDB error handling {event_type}: {e}")
        _record_failure(billing_event, str(e), TransientProcessingError.kind)
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except Exception as e:
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        _record_failure(billing_event, str(e) or type(e).__name__, "unexpected")
        return error_response(500, "processing_failed", "Processing failed")

    try:
        webhook_ledger.mark_complete(billing_event.id, outcome)
    except ClientError as e:
        # Effects are committed but the ledger doesn't know yet; the retry
        # re-applies the same writes and then completes the entry
        logger.error(f"Failed to mark event {billing_event.id} complete: {e}")
        emit_webhook_metric("transient", event_type)
        return error_response(500, "temporary_error", "Temporary error, please retry")

    emit_webhook_metric(outcome, event_type)
    logger.info(f"Successfully processed {event_type} (id={billing_event.id}): {outcome}")

    if outcome == OUTCOME_STALE:
        return received_response(stale=True)
    return received_response()


def _record_failure(billing_event: BillingEvent, message: str, kind: str) -> None:
    """Annotate the ledger entry; the entry stays unprocessed so Stripe's retry can run."""
    try:
        webhook_ledger.mark_failed(billing_event.id, message, kind)
    except ClientError as e:
        logger.error(f"Failed to record failure for event {billing_event.id}: {e}")
    emit_webhook_metric(kind, billing_event.type)


def _handle_validation_failure(billing_event: BillingEvent, error: ValidationError, policy: str) -> dict:
    if policy != POLICY_ACKNOWLEDGE:
        _record_failure(billing_event, error.message, error.kind)
        return error_response(500, error.code, "Invalid event data")

    try:
        webhook_ledger.mark_acknowledged_failure(billing_event.id, error.message, error.kind)
    except ClientError as e:
        logger.error(f"Failed to acknowledge invalid event {billing_event.id}: {e}")
        emit_webhook_metric(TransientProcessingError.kind, billing_event.type)
        return error_response(500, "temporary_error", "Temporary error, please retry")

    emit_webhook_metric(error.kind, billing_event.type)
    # Don't leak internal field names in response
    return json_response(
        200,
        {
            "error": {"code": error.code, "message": "Invalid event data"},
            "received": True,
            "processed": False,
        },
    )

