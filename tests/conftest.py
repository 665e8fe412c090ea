"""
Shared pytest fixtures for billing webhook tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
import stripe
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"

WEBHOOK_EVENTS_TABLE = "billing-webhook-events"
SUBSCRIPTIONS_TABLE = "billing-subscriptions"
USERS_TABLE = "billing-users"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def reset_stripe_secrets():
    """Reset the Stripe secrets cache between tests to prevent pollution."""
    yield
    try:
        from shared.billing_utils import reset_stripe_secrets_cache
        reset_stripe_secrets_cache()
    except ImportError:
        pass


def create_dynamodb_tables(dynamodb):
    """Create the ledger, subscription and user tables.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    for table_name in (WEBHOOK_EVENTS_TABLE, SUBSCRIPTIONS_TABLE, USERS_TABLE):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def seeded_users(mock_dynamodb):
    """Users table with the users the billing tests act on."""
    table = mock_dynamodb.Table(USERS_TABLE)
    for user_id in ("user_123", "user_456", "user_789"):
        table.put_item(
            Item={
                "pk": user_id,
                "email": f"{user_id}@example.com",
                "created_at": "2024-01-01T00:00:00+00:00",
            }
        )
    return table


@pytest.fixture
def stripe_secrets(mock_dynamodb, monkeypatch):
    """Stripe API key and webhook secret stored in (mocked) Secrets Manager."""
    import shared.billing_utils as billing_utils

    client = boto3.client("secretsmanager", region_name="us-east-1")
    api_key_arn = client.create_secret(
        Name="billing/stripe-secret", SecretString=json.dumps({"key": STRIPE_API_KEY})
    )["ARN"]
    webhook_secret_arn = client.create_secret(
        Name="billing/stripe-webhook-secret", SecretString=json.dumps({"secret": WEBHOOK_SECRET})
    )["ARN"]

    monkeypatch.setattr(billing_utils, "STRIPE_SECRET_ARN", api_key_arn)
    monkeypatch.setattr(billing_utils, "STRIPE_WEBHOOK_SECRET_ARN", webhook_secret_arn)
    billing_utils.reset_stripe_secrets_cache()
    return STRIPE_API_KEY, WEBHOOK_SECRET


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "path": "/webhooks/stripe",
        "headers": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header value for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def make_subscription():
    """Factory for Stripe Subscription objects."""

    def _make(
        user_id="user_123",
        status="active",
        price_id="price_pro_monthly",
        subscription_id="sub_123",
        customer_id="cus_123",
        **overrides,
    ):
        metadata = {"userId": user_id} if user_id else {}
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "metadata": metadata,
            "items": {"data": [{"id": "si_123", "price": {"id": price_id}}]},
            "current_period_start": 1704067200,
            "current_period_end": 1706745600,
            "cancel_at_period_end": False,
            "trial_start": None,
            "trial_end": None,
            "canceled_at": None,
            "cancel_at": None,
        }
        subscription.update(overrides)
        return subscription

    return _make


@pytest.fixture
def make_invoice():
    """Factory for Stripe Invoice objects."""

    def _make(subscription_id="sub_123", amount_paid=2900, invoice_id="in_123", **overrides):
        invoice = {
            "id": invoice_id,
            "object": "invoice",
            "customer": "cus_123",
            "subscription": subscription_id,
            "amount_paid": amount_paid,
            "currency": "usd",
        }
        invoice.update(overrides)
        return invoice

    return _make


@pytest.fixture
def make_event():
    """Factory for Stripe event envelopes."""

    def _make(event_type, data_object, event_id="evt_123", created=1704067200):
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "livemode": False,
            "data": {"object": data_object},
        }

    return _make


@pytest.fixture
def signed_request(api_gateway_event):
    """Factory for API Gateway events carrying a correctly signed Stripe payload."""

    def _make(envelope, secret=WEBHOOK_SECRET):
        payload = json.dumps(envelope)
        event = dict(api_gateway_event)
        event["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
        event["body"] = payload
        return event

    return _make


def stripe_subscription(metadata=None, subscription_id="sub_123"):
    """A Subscription as returned by stripe.Subscription.retrieve (a StripeObject, not a dict)."""
    return stripe.Subscription.construct_from(
        {"id": subscription_id, "object": "subscription", "metadata": metadata or {}}, STRIPE_API_KEY
    )
