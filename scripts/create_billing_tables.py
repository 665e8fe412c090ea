#!/usr/bin/env python3
"""
Create the DynamoDB tables used by the billing webhook pipeline.

For local DynamoDB and fresh environments; production tables are managed by
infrastructure code. Existing tables are left alone.

Usage:
    # Local DynamoDB
    python scripts/create_billing_tables.py --endpoint-url http://localhost:8000

    # Current AWS account/region
    python scripts/create_billing_tables.py
"""

import argparse
import os

import boto3
from botocore.exceptions import ClientError

TABLE_NAMES = [
    os.environ.get("WEBHOOK_EVENTS_TABLE", "billing-webhook-events"),
    os.environ.get("SUBSCRIPTIONS_TABLE", "billing-subscriptions"),
    os.environ.get("USERS_TABLE", "billing-users"),
]


def create_table(dynamodb, table_name: str) -> bool:
    """Create one pk-keyed table. Returns False if it already exists."""
    try:
        table = dynamodb.create_table(
            TableName=table_name,
            KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ResourceInUseException":
            print(f"  {table_name} already exists")
            return False
        raise

    table.wait_until_exists()
    print(f"  Created {table_name}")
    return True


def create_billing_tables(dynamodb) -> list[str]:
    """Create every billing table that doesn't exist yet. Returns the names created."""
    created = []
    for table_name in TABLE_NAMES:
        if create_table(dynamodb, table_name):
            created.append(table_name)
    return created


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create billing webhook DynamoDB tables")
    parser.add_argument("--endpoint-url", help="DynamoDB endpoint (e.g. local DynamoDB)")
    parser.add_argument("--region", default=os.environ.get("AWS_REGION", "us-east-1"))
    args = parser.parse_args(argv)

    dynamodb = boto3.resource("dynamodb", region_name=args.region, endpoint_url=args.endpoint_url)

    print("Creating billing tables")
    created = create_billing_tables(dynamodb)
    print(f"\nDone: {len(created)} created, {len(TABLE_NAMES) - len(created)} already present")


if __name__ == "__main__":
    main()
