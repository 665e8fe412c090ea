"""Shared billing utilities: Stripe secrets and tier/status resolution."""

import json
import logging
import os
import time

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import (
    DEFAULT_TIER,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_PAST_DUE,
    STATUS_TRIALING,
    TIER_PREMIUM,
    TIER_PRO,
    TIER_QUERY_LIMITS,
    TIER_TRIAL,
)

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

# Tier mapping from Stripe price IDs (configured via environment)
# Use `or` to handle empty string env vars (deploy tooling sets "" when not configured)
PRICE_TO_TIER = {
    (os.environ.get("STRIPE_PRICE_TRIAL") or "price_trial"): TIER_TRIAL,
    (os.environ.get("STRIPE_PRICE_PRO_MONTHLY") or "price_pro_monthly"): TIER_PRO,
    (os.environ.get("STRIPE_PRICE_PRO_YEARLY") or "price_pro_yearly"): TIER_PRO,
    (os.environ.get("STRIPE_PRICE_PREMIUM_MONTHLY") or "price_premium_monthly"): TIER_PREMIUM,
    (os.environ.get("STRIPE_PRICE_PREMIUM_YEARLY") or "price_premium_yearly"): TIER_PREMIUM,
}

# Stripe subscription.status -> internal status
STRIPE_STATUS_MAP = {
    "trialing": STATUS_TRIALING,
    "active": STATUS_ACTIVE,
    "past_due": STATUS_PAST_DUE,
    "unpaid": STATUS_PAST_DUE,
    "incomplete": STATUS_PAST_DUE,
    "paused": STATUS_PAST_DUE,
    "canceled": STATUS_CANCELED,
    "incomplete_expired": STATUS_EXPIRED,
}

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes


def tier_for_price_id(price_id: str | None) -> str:
    """Map a Stripe price ID to a subscription tier. Unknown prices get the default tier."""
    return PRICE_TO_TIER.get(price_id or "", DEFAULT_TIER)


def status_for_processor_status(raw_status: str | None) -> str:
    """Map a Stripe subscription status to an internal status.

    Anything Stripe adds later that we don't know about is treated as expired,
    so an unknown status never grants access.
    """
    return STRIPE_STATUS_MAP.get(raw_status or "", STATUS_EXPIRED)


def query_limit_for_tier(tier: str | None) -> int:
    """Monthly query limit for a tier (0 for unknown tiers)."""
    return TIER_QUERY_LIMITS.get(tier or "", 0)


def _read_secret(secret_arn: str, json_field: str) -> str | None:
    """Read a secret that may be stored raw or as JSON."""
    response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or secret_value
    return secret_value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secret = None

    if STRIPE_SECRET_ARN:
        try:
            api_key = _read_secret(STRIPE_SECRET_ARN, "key")
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe API key: {e}")

    if STRIPE_WEBHOOK_SECRET_ARN:
        try:
            webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret")
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe webhook secret: {e}")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def reset_stripe_secrets_cache():
    """Forget cached secrets. Used in tests and after secret rotation."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0
