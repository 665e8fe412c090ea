"""
Tests for atomic application of billing write sets.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from shared import subscription_store
from shared.billing_events import parse_event
from shared.billing_transitions import (
    BillingWriteSet,
    SubscriptionWrite,
    UserWrite,
    handle_subscription_change,
    handle_subscription_deleted,
)
from shared.errors import StaleEventError, TransientProcessingError, ValidationError
from shared.subscription_store import apply_write_set, get_subscription, get_user


def _subscription_write_set(make_event, make_subscription, event_type="customer.subscription.created", created=1704067200, **kwargs):
    event = parse_event(make_event(event_type, make_subscription(**kwargs), created=created))
    return handle_subscription_change(event)


def _payment_failed_write_set(user_id="user_123", created=1704067200):
    return BillingWriteSet(
        user_id=user_id,
        event_id="evt_failed",
        event_created=created,
        subscription=SubscriptionWrite(fields={"status": "past_due"}, reject_terminal=True),
        user=UserWrite(fields={"subscription_status": "past_due"}),
    )


def _payment_write_set(user_id="user_123", created=1704067200):
    return BillingWriteSet(
        user_id=user_id,
        event_id=f"evt_paid_{created}",
        event_created=created,
        user=UserWrite(
            fields={"last_payment_amount": Decimal("29"), "last_payment_event_created": created},
            ordering_attribute="last_payment_event_created",
        ),
    )


@pytest.fixture
def existing_subscription(mock_dynamodb, seeded_users):
    """An active pro subscription with some usage already counted."""
    table = mock_dynamodb.Table("billing-subscriptions")
    item = {
        "pk": "user_123",
        "user_id": "user_123",
        "status": "active",
        "tier": "pro",
        "stripe_subscription_id": "sub_123",
        "current_month_usage": {"queries": 42, "tokens": 1200, "cost": Decimal("0.37"), "last_reset": "2024-01-01"},
        "monthly_query_limit": 1000,
        "last_event_created": 1704067200,
        "last_event_id": "evt_first",
        "version": 3,
    }
    table.put_item(Item=item)
    return table


class TestApplyWriteSet:
    """Tests for create/update of the subscription record plus user projection."""

    def test_creates_subscription_and_user_projection(self, mock_dynamodb, seeded_users, make_event, make_subscription):
        action = apply_write_set(_subscription_write_set(make_event, make_subscription))

        assert action == "created"
        subscription = get_subscription("user_123")
        assert subscription["status"] == "active"
        assert subscription["tier"] == "pro"
        assert subscription["version"] == 1
        assert subscription["last_event_id"] == "evt_123"
        assert subscription["last_event_created"] == 1704067200
        assert subscription["monthly_query_limit"] == 1000
        assert subscription["current_month_usage"]["queries"] == 0

        user = get_user("user_123")
        assert user["subscription_status"] == "active"
        assert user["subscription_tier"] == "pro"
        assert user["email"] == "user_123@example.com"

    def test_update_keeps_usage_counters(self, existing_subscription, make_event, make_subscription):
        write_set = _subscription_write_set(
            make_event,
            make_subscription,
            event_type="customer.subscription.updated",
            created=1704067300,
            price_id="price_premium_monthly",
        )

        action = apply_write_set(write_set)

        assert action == "updated"
        subscription = get_subscription("user_123")
        assert subscription["tier"] == "premium"
        assert subscription["version"] == 4
        assert subscription["current_month_usage"]["queries"] == 42
        assert subscription["monthly_query_limit"] == 1000

    def test_same_timestamp_is_not_stale(self, existing_subscription, make_event, make_subscription):
        write_set = _subscription_write_set(
            make_event, make_subscription, event_type="customer.subscription.updated", created=1704067200
        )

        assert apply_write_set(write_set) == "updated"

    def test_missing_user_writes_nothing(self, mock_dynamodb, seeded_users, make_event, make_subscription):
        """The subscription record is not created when the user update can't apply."""
        write_set = _subscription_write_set(make_event, make_subscription, user_id="user_ghost")

        with pytest.raises(ValidationError):
            apply_write_set(write_set)

        assert get_subscription("user_ghost") is None
        assert get_user("user_ghost") is None

    def test_older_event_is_stale(self, existing_subscription, make_event, make_subscription):
        write_set = _subscription_write_set(
            make_event,
            make_subscription,
            event_type="customer.subscription.updated",
            created=1704000000,
            status="canceled",
        )

        with pytest.raises(StaleEventError):
            apply_write_set(write_set)

        subscription = get_subscription("user_123")
        assert subscription["status"] == "active"
        assert subscription["version"] == 3
        assert "subscription_status" not in get_user("user_123")

    def test_payment_failure_never_moves_terminal_subscription(self, existing_subscription):
        existing_subscription.update_item(
            Key={"pk": "user_123"},
            UpdateExpression="SET #s = :expired",
            ExpressionAttributeNames={"#s": "status"},
            ExpressionAttributeValues={":expired": "expired"},
        )

        with pytest.raises(StaleEventError):
            apply_write_set(_payment_failed_write_set(created=1704067300))

        assert get_subscription("user_123")["status"] == "expired"

    def test_payment_failure_marks_past_due(self, existing_subscription):
        assert apply_write_set(_payment_failed_write_set(created=1704067300)) == "updated"

        assert get_subscription("user_123")["status"] == "past_due"
        assert get_user("user_123")["subscription_status"] == "past_due"

    def test_payment_failure_without_subscription_record(self, mock_dynamodb, seeded_users):
        with pytest.raises(ValidationError):
            apply_write_set(_payment_failed_write_set())

        assert get_subscription("user_123") is None

    def test_created_after_terminal_starts_fresh_record(self, existing_subscription, make_event, make_subscription):
        existing_subscription.update_item(
            Key={"pk": "user_123"},
            UpdateExpression="SET #s = :expired",
            ExpressionAttributeNames={"#s": "status"},
            ExpressionAttributeValues={":expired": "expired"},
        )
        write_set = _subscription_write_set(
            make_event, make_subscription, created=1704067300, subscription_id="sub_new"
        )

        action = apply_write_set(write_set)

        assert action == "replaced"
        subscription = get_subscription("user_123")
        assert subscription["status"] == "active"
        assert subscription["stripe_subscription_id"] == "sub_new"
        assert subscription["current_month_usage"]["queries"] == 0
        assert subscription["version"] == 4

    def test_deleted_expires_and_keeps_tier(self, existing_subscription, make_event, make_subscription):
        event = parse_event(
            make_event("customer.subscription.deleted", make_subscription(status="canceled"), created=1704067300)
        )

        apply_write_set(handle_subscription_deleted(event))

        subscription = get_subscription("user_123")
        assert subscription["status"] == "expired"
        assert subscription["tier"] == "pro"
        assert "canceled_at" in subscription
        assert get_user("user_123")["subscription_status"] == "expired"


class TestUserOnlyWrites:
    """Tests for payment records, which touch only the user."""

    def test_records_payment(self, mock_dynamodb, seeded_users):
        assert apply_write_set(_payment_write_set()) == "none"

        user = get_user("user_123")
        assert user["last_payment_amount"] == Decimal("29")
        assert user["last_payment_event_created"] == 1704067200

    def test_older_payment_is_stale(self, mock_dynamodb, seeded_users):
        apply_write_set(_payment_write_set(created=1704067300))

        with pytest.raises(StaleEventError):
            apply_write_set(_payment_write_set(created=1704067200))

        assert get_user("user_123")["last_payment_event_created"] == 1704067300

    def test_payment_for_missing_user(self, mock_dynamodb, seeded_users):
        with pytest.raises(ValidationError):
            apply_write_set(_payment_write_set(user_id="user_ghost"))


class TestConcurrentWrites:
    """Tests for the optimistic lock on the subscription record."""

    def test_version_conflict_is_retried(self, existing_subscription, make_event, make_subscription):
        real_read = subscription_store.get_subscription
        reads = []

        def racing_read(user_id):
            reads.append(user_id)
            item = real_read(user_id)
            if len(reads) == 1:
                # Another writer bumped the version after this read
                item = {**item, "version": 2}
            return item

        write_set = _subscription_write_set(
            make_event, make_subscription, event_type="customer.subscription.updated", created=1704067300
        )

        with patch.object(subscription_store, "get_subscription", side_effect=racing_read), patch(
            "shared.retry.time.sleep"
        ):
            assert apply_write_set(write_set) == "updated"

        assert len(reads) == 2
        assert get_subscription("user_123")["version"] == 4

    def test_persistent_conflict_is_transient(self, existing_subscription, make_event, make_subscription):
        real_read = subscription_store.get_subscription

        def always_stale(user_id):
            return {**real_read(user_id), "version": 2}

        write_set = _subscription_write_set(
            make_event, make_subscription, event_type="customer.subscription.updated", created=1704067300
        )

        with patch.object(subscription_store, "get_subscription", side_effect=always_stale), patch(
            "shared.retry.time.sleep"
        ) as mock_sleep:
            with pytest.raises(TransientProcessingError):
                apply_write_set(write_set)

        assert mock_sleep.call_count == subscription_store.TRANSACTION_RETRY_CONFIG.max_retries
        assert get_subscription("user_123")["version"] == 3


class TestSupersededSubscription:
    """Events for a subscription the user has since replaced."""

    def test_late_deletion_of_previous_subscription_is_stale(self, existing_subscription, make_event, make_subscription):
        event = parse_event(
            make_event(
                "customer.subscription.deleted",
                make_subscription(status="canceled", subscription_id="sub_old"),
                created=1704067300,
            )
        )

        with pytest.raises(StaleEventError):
            apply_write_set(handle_subscription_deleted(event))

        subscription = get_subscription("user_123")
        assert subscription["status"] == "active"
        assert subscription["version"] == 3
        assert "subscription_status" not in get_user("user_123")

    def test_payment_failure_for_previous_subscription_is_stale(self, existing_subscription):
        write_set = _payment_failed_write_set(created=1704067300)
        write_set.subscription.match_subscription_id = "sub_old"

        with pytest.raises(StaleEventError):
            apply_write_set(write_set)

        assert get_subscription("user_123")["status"] == "active"

    def test_record_without_stripe_id_still_applies(self, existing_subscription):
        existing_subscription.update_item(Key={"pk": "user_123"}, UpdateExpression="REMOVE stripe_subscription_id")
        write_set = _payment_failed_write_set(created=1704067300)
        write_set.subscription.match_subscription_id = "sub_123"

        assert apply_write_set(write_set) == "updated"
        assert get_subscription("user_123")["status"] == "past_due"
