"""
Shared constants for the billing webhook pipeline.
"""

# Subscription tiers
TIER_TRIAL = "trial"
TIER_PRO = "pro"
TIER_PREMIUM = "premium"

# Monthly query entitlement per tier (unknown tiers get 0)
TIER_QUERY_LIMITS = {
    TIER_TRIAL: 100,
    TIER_PRO: 1000,
    TIER_PREMIUM: 10000,
}

# Tier assigned when a price id is not in the price table
DEFAULT_TIER = TIER_TRIAL

# Internal subscription statuses
STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"

# No further transitions are expected out of these
TERMINAL_STATUSES = (STATUS_CANCELED, STATUS_EXPIRED)

# Stripe event types the dispatcher routes
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAID = "invoice.paid"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"

# Ledger outcomes
OUTCOME_APPLIED = "applied"
OUTCOME_IGNORED = "ignored"
OUTCOME_STALE = "stale"
OUTCOME_ACKNOWLEDGED_FAILURE = "acknowledged_failure"

# Validation failure policies
POLICY_RETRY = "retry"
POLICY_ACKNOWLEDGE = "acknowledge"
