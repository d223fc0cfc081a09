"""Read-only access to listing creation timestamps for quota counting."""

import os
from boto3.dynamodb.conditions import Key
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from aws_lambda_powertools import Logger

from portal_core.models.entitlement import ListingRecord
from portal_core.services.aws import get_ddb_table, store_errors

logger = Logger()

OWNER_INDEX = "OwnerIdIndex"


class ListingStore:
    def __init__(self, table_name: Optional[str] = None):
        self.table_name = table_name or os.environ.get("LISTINGS_TABLE_NAME", "portal-listings")
        self._table = None

    @property
    def table(self):
        """Lazy initialization of DynamoDB table"""
        if self._table is None:
            self._table = get_ddb_table(self.table_name)
        return self._table

    def list_by_owner(self, owner_id: str, since: Optional[datetime] = None) -> List[ListingRecord]:
        """
        Listings owned by an agent, optionally restricted to those created at or after `since`.

        Args:
            owner_id: Agent user id
            since: Lower bound on created_at, None for every listing

        Returns:
            List of ListingRecord, oldest first
        """
        condition = Key("owner_id").eq(owner_id)
        if since is not None:
            condition = condition & Key("created_at").gte(since.astimezone(timezone.utc).isoformat())

        query_args: Dict[str, Any] = {
            "IndexName": OWNER_INDEX,
            "KeyConditionExpression": condition,
            "ProjectionExpression": "listing_id, owner_id, created_at",
        }
        records: List[ListingRecord] = []
        with store_errors(f"listing listings of {owner_id}"):
            while True:
                response = self.table.query(**query_args)
                records.extend(ListingRecord(**item) for item in response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                query_args["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        logger.debug(f"Found {len(records)} listings for owner {owner_id}")
        return records

    def creation_times(self, owner_id: str, since: Optional[datetime] = None) -> List[datetime]:
        return [record.created_at for record in self.list_by_owner(owner_id, since)]
