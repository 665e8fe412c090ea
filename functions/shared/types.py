"""
Shared Type Definitions for the billing webhook pipeline.

Provides TypedDict definitions for AWS Lambda events/responses and the
DynamoDB items the pipeline reads and writes.
"""

from decimal import Decimal
from typing import Any, Optional, TypedDict


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    body: Optional[str]
    requestContext: dict[str, Any]
    resource: str
    path: str
    isBase64Encoded: bool


class LambdaContext:
    """Lambda context object (simplified type hints)."""

    function_name: str
    aws_request_id: str

    def get_remaining_time_in_millis(self) -> int:
        """Get remaining execution time in milliseconds."""
        ...


class LambdaResponse(TypedDict):
    """Standard Lambda response structure."""

    statusCode: int
    headers: dict[str, str]
    body: str


class WebhookEventRecord(TypedDict, total=False):
    """Idempotency ledger item, keyed by Stripe event ID."""

    pk: str
    event_type: str
    raw_payload: str
    event_created: int
    livemode: bool
    processed: bool
    attempts: int
    lease_expires_at: int
    outcome: str
    error: str
    error_kind: str
    created_at: str
    processed_at: str
    failed_at: str
    last_attempt_at: str


class UsageCounters(TypedDict):
    """current_month_usage on a subscription record."""

    queries: int
    tokens: int
    cost: Decimal
    last_reset: str


class SubscriptionRecord(TypedDict, total=False):
    """Subscription item, keyed by user ID."""

    pk: str
    user_id: str
    stripe_customer_id: str
    stripe_subscription_id: str
    stripe_price_id: str
    status: str
    tier: str
    subscribed_apps: list[str]
    current_period_start: int
    current_period_end: int
    cancel_at_period_end: bool
    canceled_at: int
    cancel_at: int
    trial_start_date: int
    trial_end_date: int
    current_month_usage: UsageCounters
    monthly_query_limit: int
    last_event_created: int
    last_event_id: str
    version: int
    created_at: str
    updated_at: str
