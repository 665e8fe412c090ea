"""
Atomic persistence for billing write sets.

The subscription record and the user's billing projection are written in one
DynamoDB TransactWriteItems call: either both change or neither does.

Create-vs-update needs a read first. The read is tied to the write with an
optimistic lock (a version counter on the subscription record), so a
concurrent write for the same user between the two makes the transaction fail
and the whole apply is retried against fresh state.

Every subscription write also records the Stripe timestamp of the event that
produced it; older events are rejected as stale instead of regressing state.
Deletions and payment failures are also stale once the record has moved on to
a different Stripe subscription.
"""

import logging
import os
from typing import Any, Optional

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb, get_dynamodb_client
from shared.billing_transitions import BillingWriteSet
from shared.constants import TERMINAL_STATUSES
from shared.errors import StaleEventError, TransientProcessingError, ValidationError
from shared.retry import RetryConfig, retry
from shared.types import SubscriptionRecord

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "billing-subscriptions")
USERS_TABLE = os.environ.get("USERS_TABLE", "billing-users")

_serializer = TypeSerializer()


class VersionConflict(Exception):
    """Subscription record changed between our read and our write."""


TRANSACTION_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=0.05,
    max_delay=1.0,
    jitter_factor=0.2,
    retryable_exceptions=(VersionConflict,),
)


class _Expression:
    """Collects aliased attribute names and serialized values for one item."""

    def __init__(self):
        self.names: dict[str, str] = {}
        self.values: dict[str, dict] = {}
        self._aliases: dict[str, str] = {}

    def name(self, attribute: str) -> str:
        if attribute not in self._aliases:
            alias = f"#a{len(self._aliases)}"
            self._aliases[attribute] = alias
            self.names[alias] = attribute
        return self._aliases[attribute]

    def value(self, value: Any) -> str:
        placeholder = f":v{len(self.values)}"
        self.values[placeholder] = _serializer.serialize(value)
        return placeholder

    def set_clause(self, fields: dict) -> str:
        return "SET " + ", ".join(f"{self.name(k)} = {self.value(v)}" for k, v in fields.items())


def _serialize_item(item: dict) -> dict:
    return {k: _serializer.serialize(v) for k, v in item.items()}


def get_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    """Read a user's subscription record (strongly consistent)."""
    table = get_dynamodb().Table(SUBSCRIPTIONS_TABLE)
    return table.get_item(Key={"pk": user_id}, ConsistentRead=True).get("Item")


def get_user(user_id: str) -> Optional[dict]:
    """Read a user record (strongly consistent)."""
    table = get_dynamodb().Table(USERS_TABLE)
    return table.get_item(Key={"pk": user_id}, ConsistentRead=True).get("Item")


def _version_condition(expr: _Expression, version: int) -> str:
    # Records written before versioning have no counter yet
    if version == 0:
        return f"attribute_not_exists({expr.name('version')})"
    return f"{expr.name('version')} = {expr.value(version)}"


def _subscription_item(write_set: BillingWriteSet) -> tuple[dict, str]:
    """Build the subscription half of the transaction from a fresh read.

    Returns:
        (transact item, action) where action is created/replaced/updated
    """
    sub_write = write_set.subscription
    user_id = write_set.user_id
    existing = get_subscription(user_id)

    tracking = {
        "last_event_created": write_set.event_created,
        "last_event_id": write_set.event_id,
    }

    if existing is None:
        if not sub_write.may_create:
            raise ValidationError(f"No subscription record for user {user_id}")
        item = {"pk": user_id, **sub_write.seed_fields, **sub_write.fields, **tracking, "version": 1}
        return (
            {
                "Put": {
                    "TableName": SUBSCRIPTIONS_TABLE,
                    "Item": _serialize_item(item),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            },
            "created",
        )

    last_created = int(existing.get("last_event_created", 0))
    if write_set.event_created < last_created:
        raise StaleEventError(
            f"Event {write_set.event_id} (created {write_set.event_created}) is older than "
            f"{existing.get('last_event_id')} (created {last_created}) already applied for user {user_id}"
        )

    stored_subscription_id = existing.get("stripe_subscription_id")
    if sub_write.match_subscription_id and stored_subscription_id and (
        stored_subscription_id != sub_write.match_subscription_id
    ):
        raise StaleEventError(
            f"Event {write_set.event_id} is for {sub_write.match_subscription_id}, but user {user_id} "
            f"is now on {stored_subscription_id}"
        )

    current_status = existing.get("status")
    terminal = current_status in TERMINAL_STATUSES
    if terminal and sub_write.reject_terminal:
        raise StaleEventError(f"Subscription for user {user_id} is already {current_status}")

    version = int(existing.get("version", 0))
    expr = _Expression()

    if terminal and sub_write.replace_terminal and sub_write.may_create:
        logger.info(f"Starting fresh subscription record for user {user_id} (was {current_status})")
        item = {"pk": user_id, **sub_write.seed_fields, **sub_write.fields, **tracking, "version": version + 1}
        put = {
            "TableName": SUBSCRIPTIONS_TABLE,
            "Item": _serialize_item(item),
            "ConditionExpression": _version_condition(expr, version),
        }
        if expr.names:
            put["ExpressionAttributeNames"] = expr.names
        if expr.values:
            put["ExpressionAttributeValues"] = expr.values
        return {"Put": put}, "replaced"

    update_expr = expr.set_clause({**sub_write.fields, **tracking, "version": version + 1})
    return (
        {
            "Update": {
                "TableName": SUBSCRIPTIONS_TABLE,
                "Key": {"pk": {"S": user_id}},
                "UpdateExpression": update_expr,
                "ConditionExpression": _version_condition(expr, version),
                "ExpressionAttributeNames": expr.names,
                "ExpressionAttributeValues": expr.values,
            }
        },
        "updated",
    )


def _user_item(write_set: BillingWriteSet) -> dict:
    """Build the user-record half of the transaction. The user record must already exist."""
    user_write = write_set.user
    expr = _Expression()
    update_expr = expr.set_clause(user_write.fields)

    condition = "attribute_exists(pk)"
    if user_write.ordering_attribute:
        order = expr.name(user_write.ordering_attribute)
        condition += f" AND (attribute_not_exists({order}) OR {order} <= {expr.value(write_set.event_created)})"

    return {
        "Update": {
            "TableName": USERS_TABLE,
            "Key": {"pk": {"S": write_set.user_id}},
            "UpdateExpression": update_expr,
            "ConditionExpression": condition,
            "ExpressionAttributeNames": expr.names,
            "ExpressionAttributeValues": expr.values,
        }
    }


def _raise_for_user_condition(write_set: BillingWriteSet, error: ClientError):
    """The user item's condition failed: missing record, or an older event."""
    user = get_user(write_set.user_id)
    if user is None:
        raise ValidationError(f"No user record for user {write_set.user_id}") from error
    raise StaleEventError(
        f"Event {write_set.event_id} is older than the last "
        f"{write_set.user.ordering_attribute} applied for user {write_set.user_id}"
    ) from error


@retry(TRANSACTION_RETRY_CONFIG)
def _apply_once(write_set: BillingWriteSet) -> str:
    transact_items = []
    action = "none"
    sub_index = None

    if write_set.subscription is not None:
        sub_item, action = _subscription_item(write_set)
        sub_index = len(transact_items)
        transact_items.append(sub_item)

    user_index = len(transact_items)
    transact_items.append(_user_item(write_set))

    try:
        get_dynamodb_client().transact_write_items(TransactItems=transact_items)
    except ClientError as e:
        if e.response["Error"]["Code"] != "TransactionCanceledException":
            raise TransientProcessingError(f"Failed to write billing state for {write_set.user_id}: {e}") from e

        reasons = [r.get("Code") for r in e.response.get("CancellationReasons", [])]
        if sub_index is not None and len(reasons) > sub_index and reasons[sub_index] == "ConditionalCheckFailed":
            raise VersionConflict(f"Subscription for {write_set.user_id} changed concurrently") from e
        if len(reasons) > user_index and reasons[user_index] == "ConditionalCheckFailed":
            _raise_for_user_condition(write_set, e)
        if "TransactionConflict" in reasons:
            raise VersionConflict(f"Transaction conflict for {write_set.user_id}") from e
        raise TransientProcessingError(
            f"Billing transaction cancelled for {write_set.user_id}: {reasons or e}"
        ) from e

    return action


def apply_write_set(write_set: BillingWriteSet) -> str:
    """Commit a handler's writes atomically.

    Returns:
        What happened to the subscription record: created, replaced, updated or none

    Raises:
        StaleEventError: event is older than state already applied (nothing written)
        ValidationError: user record (or required subscription record) missing
        TransientProcessingError: DynamoDB failure or persistent write contention
    """
    try:
        action = _apply_once(write_set)
    except VersionConflict as e:
        raise TransientProcessingError(str(e)) from e

    logger.info(
        f"Applied {write_set.event_id} for user {write_set.user_id}: subscription {action}, "
        f"user fields {sorted(write_set.user.fields)}"
    )
    return action
