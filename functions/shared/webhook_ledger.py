"""
Idempotency ledger for Stripe webhook events.

One item per Stripe event ID, never deleted. An entry is claimed with a
conditional write so that two concurrent deliveries of the same event can't
both run the handlers; a lease marks the attempt in flight so a crashed
attempt doesn't block retries forever.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.billing_events import BillingEvent
from shared.constants import OUTCOME_ACKNOWLEDGED_FAILURE, OUTCOME_APPLIED
from shared.types import WebhookEventRecord

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = os.environ.get("WEBHOOK_EVENTS_TABLE", "billing-webhook-events")

# How long one processing attempt may hold the claim
LEDGER_LEASE_SECONDS = int(os.environ.get("LEDGER_LEASE_SECONDS", "300"))

MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class Registration:
    """Result of check_and_register()."""

    already_processed: bool = False
    in_progress: bool = False
    attempt: int = 1

    @property
    def claimed(self) -> bool:
        return not (self.already_processed or self.in_progress)


def _table():
    return get_dynamodb().Table(WEBHOOK_EVENTS_TABLE)


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def check_and_register(event: BillingEvent) -> Registration:
    """Claim an event for processing.

    1. First receipt: create the entry with processed=false (atomic create-if-absent).
    2. Entry exists, unprocessed and no live lease (an earlier attempt failed):
       take over the claim.
    3. Otherwise report whether it was already processed or is in flight.
    """
    table = _table()
    now = datetime.now(timezone.utc)
    now_ts = int(now.timestamp())
    lease_expires_at = now_ts + LEDGER_LEASE_SECONDS

    try:
        table.put_item(
            Item={
                "pk": event.id,
                "event_type": event.type,
                "raw_payload": json.dumps(event.raw, default=str),
                "event_created": event.created,
                "livemode": event.livemode,
                "processed": False,
                "attempts": 1,
                "lease_expires_at": lease_expires_at,
                "created_at": now.isoformat(),
            },
            ConditionExpression="attribute_not_exists(pk)",
        )
        return Registration(attempt=1)
    except ClientError as e:
        if not _is_conditional_failure(e):
            raise

    try:
        response = table.update_item(
            Key={"pk": event.id},
            UpdateExpression="SET attempts = attempts + :one, lease_expires_at = :lease, last_attempt_at = :now",
            ConditionExpression=(
                "processed = :false AND "
                "(attribute_not_exists(lease_expires_at) OR lease_expires_at < :now_ts)"
            ),
            ExpressionAttributeValues={
                ":one": 1,
                ":lease": lease_expires_at,
                ":now": now.isoformat(),
                ":false": False,
                ":now_ts": now_ts,
            },
            ReturnValues="UPDATED_NEW",
        )
        attempt = int(response["Attributes"]["attempts"])
        logger.info(f"Re-claimed event {event.id} for attempt {attempt}")
        return Registration(attempt=attempt)
    except ClientError as e:
        if not _is_conditional_failure(e):
            raise

    item = table.get_item(Key={"pk": event.id}, ConsistentRead=True).get("Item") or {}
    attempts = int(item.get("attempts", 1))
    if item.get("processed"):
        return Registration(already_processed=True, attempt=attempts)
    return Registration(in_progress=True, attempt=attempts)


def mark_complete(event_id: str, outcome: str = OUTCOME_APPLIED) -> None:
    """Record that the event's effects are durably applied."""
    _table().update_item(
        Key={"pk": event_id},
        UpdateExpression="SET processed = :true, processed_at = :now, outcome = :outcome REMOVE lease_expires_at",
        ExpressionAttributeValues={
            ":true": True,
            ":now": datetime.now(timezone.utc).isoformat(),
            ":outcome": outcome,
        },
    )


def mark_failed(event_id: str, error_message: str, error_kind: str) -> None:
    """Annotate a failed attempt. The entry stays unprocessed so a retry can run."""
    _table().update_item(
        Key={"pk": event_id},
        UpdateExpression="SET #error = :error, error_kind = :kind, failed_at = :now REMOVE lease_expires_at",
        ExpressionAttributeNames={"#error": "error"},
        ExpressionAttributeValues={
            ":error": (error_message or "Unknown error")[:MAX_ERROR_LENGTH],
            ":kind": error_kind,
            ":now": datetime.now(timezone.utc).isoformat(),
        },
    )


def mark_acknowledged_failure(event_id: str, error_message: str, error_kind: str) -> None:
    """Close out an event that can never succeed, keeping the error for follow-up."""
    now = datetime.now(timezone.utc).isoformat()
    _table().update_item(
        Key={"pk": event_id},
        UpdateExpression=(
            "SET processed = :true, processed_at = :now, outcome = :outcome, "
            "#error = :error, error_kind = :kind, failed_at = :now REMOVE lease_expires_at"
        ),
        ExpressionAttributeNames={"#error": "error"},
        ExpressionAttributeValues={
            ":true": True,
            ":now": now,
            ":outcome": OUTCOME_ACKNOWLEDGED_FAILURE,
            ":error": (error_message or "Unknown error")[:MAX_ERROR_LENGTH],
            ":kind": error_kind,
        },
    )


def release_lease(event_id: str) -> None:
    """Drop the in-flight lease (used by the replay tool before re-running an event)."""
    _table().update_item(
        Key={"pk": event_id},
        UpdateExpression="REMOVE lease_expires_at",
        ConditionExpression="processed = :false",
        ExpressionAttributeValues={":false": False},
    )


def get_event_record(event_id: str) -> WebhookEventRecord | None:
    """Fetch the ledger entry for an event."""
    return _table().get_item(Key={"pk": event_id}, ConsistentRead=True).get("Item")


def list_failed_events(limit: int = 100) -> list[WebhookEventRecord]:
    """Unprocessed ledger entries, oldest first.

    Scans the whole table before ordering, so the oldest entries are returned
    even when they sit on a later scan page.
    """
    table = _table()
    filter_expr = Attr("processed").eq(False)

    items = []
    response = table.scan(FilterExpression=filter_expr)
    items.extend(response.get("Items", []))
    while "LastEvaluatedKey" in response:
        response = table.scan(FilterExpression=filter_expr, ExclusiveStartKey=response["LastEvaluatedKey"])
        items.extend(response.get("Items", []))

    items.sort(key=lambda item: item.get("created_at", ""))
    return items[:limit]
