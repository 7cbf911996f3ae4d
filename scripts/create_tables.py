#!/usr/bin/env python3
"""
Script: create_tables.py
Description: Create the DynamoDB tables used by the event bus.

Creates the events, subscriptions and deliveries tables (with their
StatusIndex, EventIndex and EventTypeIndex GSIs) using the table names
and region from settings. Handy against DynamoDB Local.

Usage:
    python scripts/create_tables.py
    python scripts/create_tables.py --endpoint-url http://localhost:8001
"""

import argparse
import sys

import boto3
from botocore.exceptions import ClientError

from eventbus.config.settings import settings
from eventbus.storage.dynamodb import create_tables
from eventbus.utils.logger import get_logger

logger = get_logger(__name__)


def main():
    """Main script execution."""
    parser = argparse.ArgumentParser(
        description="Create the event bus DynamoDB tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/create_tables.py
  python scripts/create_tables.py --endpoint-url http://localhost:8001
        """
    )

    parser.add_argument(
        '--endpoint-url',
        type=str,
        default=settings.dynamodb_endpoint_url,
        help='DynamoDB endpoint override (e.g. DynamoDB Local)'
    )

    parser.add_argument(
        '--region',
        type=str,
        default=settings.aws_region,
        help='AWS region'
    )

    args = parser.parse_args()

    dynamodb = boto3.resource('dynamodb', region_name=args.region, endpoint_url=args.endpoint_url)

    try:
        create_tables(
            dynamodb,
            events_table_name=settings.events_table_name,
            subscriptions_table_name=settings.subscriptions_table_name,
            deliveries_table_name=settings.deliveries_table_name,
        )
    except ClientError as e:
        logger.error(
            "Failed to create DynamoDB tables",
            error_code=e.response['Error']['Code'],
            error_message=e.response['Error']['Message']
        )
        print(f"Failed: {e.response['Error']['Message']}")
        sys.exit(1)

    print("Created tables:")
    print(f"  {settings.events_table_name}")
    print(f"  {settings.subscriptions_table_name}")
    print(f"  {settings.deliveries_table_name}")


if __name__ == "__main__":
    main()
