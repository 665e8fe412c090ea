#!/usr/bin/env python3
"""
Replay Stripe webhook events that never completed.

Reads unprocessed entries from the idempotency ledger and runs their stored
payloads back through the webhook pipeline. The payloads were authenticated
when first received, so no signature is needed here. Entries whose lease is
still live are skipped unless --force is given.

Usage:
    # Dry run (shows what would be replayed)
    python scripts/replay_failed_events.py --dry-run

    # Replay up to 50 events, closing out ones that can never succeed
    python scripts/replay_failed_events.py --limit 50 --policy acknowledge
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone

import stripe

# Add functions directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../functions"))

from api.billing_webhook import process_billing_event  # noqa: E402
from shared import webhook_ledger  # noqa: E402
from shared.billing_events import parse_event  # noqa: E402
from shared.billing_utils import get_stripe_secrets  # noqa: E402
from shared.constants import POLICY_ACKNOWLEDGE, POLICY_RETRY  # noqa: E402
from shared.errors import MalformedEventError  # noqa: E402


def _lease_is_live(item: dict, now_ts: int) -> bool:
    lease = item.get("lease_expires_at")
    return lease is not None and int(lease) >= now_ts


def replay_failed_events(limit: int = 100, dry_run: bool = False, force: bool = False, policy: str | None = None) -> dict:
    """Replay unprocessed ledger entries, oldest first.

    Returns:
        Counts of replayed, failed, skipped and (dry run) pending events
    """
    stats = {"replayed": 0, "failed": 0, "skipped": 0, "pending": 0}
    now_ts = int(datetime.now(timezone.utc).timestamp())

    items = webhook_ledger.list_failed_events(limit)
    print(f"Found {len(items)} unprocessed events")

    for item in items:
        event_id = item["pk"]
        summary = f"{event_id} ({item.get('event_type')}, attempts={item.get('attempts')}, error={item.get('error')!r})"

        if _lease_is_live(item, now_ts) and not force:
            print(f"  SKIP {summary}: in flight")
            stats["skipped"] += 1
            continue

        if dry_run:
            print(f"  Would replay {summary}")
            stats["pending"] += 1
            continue

        try:
            billing_event = parse_event(json.loads(item["raw_payload"]))
        except (KeyError, json.JSONDecodeError, MalformedEventError) as e:
            print(f"  FAILED {summary}: stored payload unusable: {e}")
            stats["failed"] += 1
            continue

        if force and _lease_is_live(item, now_ts):
            webhook_ledger.release_lease(event_id)

        response = process_billing_event(billing_event, validation_policy=policy)
        if response["statusCode"] == 200:
            print(f"  OK {summary}")
            stats["replayed"] += 1
        else:
            print(f"  FAILED {summary}: HTTP {response['statusCode']} {response['body']}")
            stats["failed"] += 1

    return stats


def main(argv=None):
    parser = argparse.ArgumentParser(description="Replay Stripe webhook events that never completed")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be replayed without processing")
    parser.add_argument("--limit", type=int, default=100, help="Maximum events to replay")
    parser.add_argument("--force", action="store_true", help="Replay events even if another attempt holds the lease")
    parser.add_argument(
        "--policy",
        choices=[POLICY_RETRY, POLICY_ACKNOWLEDGE],
        help="Validation failure policy (default: VALIDATION_FAILURE_POLICY)",
    )
    args = parser.parse_args(argv)

    if not args.dry_run:
        api_key, _ = get_stripe_secrets()
        api_key = os.environ.get("STRIPE_API_KEY") or api_key
        if not api_key:
            print("Stripe API key not configured; set STRIPE_SECRET_ARN or STRIPE_API_KEY")
            sys.exit(1)
        stripe.api_key = api_key

    stats = replay_failed_events(limit=args.limit, dry_run=args.dry_run, force=args.force, policy=args.policy)

    print(
        f"\nDone: {stats['replayed']} replayed, {stats['failed']} failed, "
        f"{stats['skipped']} skipped, {stats['pending']} pending (dry run)"
    )
    return stats


if __name__ == "__main__":
    main()
