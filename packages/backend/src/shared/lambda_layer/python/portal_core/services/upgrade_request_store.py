"""
Upgrade Request Store

CRUD for subscription upgrade requests. Review transitions are applied
with a condition on the current review state so concurrent reviewers
cannot both succeed.
"""

import os
from boto3.dynamodb.conditions import Key
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from aws_lambda_powertools import Logger

from portal_core.models.entitlement import parse_timestamp
from portal_core.models.upgrade_request import ReviewState, SubscriptionUpgradeRequest
from portal_core.services.aws import (
    TransactionConflict,
    get_ddb_table,
    store_errors,
    to_attribute_values,
    transact_write,
)

logger = Logger()

REVIEW_STATE_INDEX = "ReviewStateIndex"
AGENT_INDEX = "AgentIdIndex"


def request_to_item(request: SubscriptionUpgradeRequest) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "request_id": request.request_id,
        "agent_id": request.agent_id,
        "plan_id": request.plan_id,
        "amount_claimed": Decimal(str(request.amount_claimed)),
        "duration_label": request.duration_label,
        "monthly_listings_claimed": request.monthly_listings_claimed,
        "receipt_reference": request.receipt_reference,
        "review_state": request.review_state.value,
        "created_at": request.created_at.isoformat(),
    }
    if request.reviewed_at:
        item["reviewed_at"] = request.reviewed_at.isoformat()
    if request.reviewed_by:
        item["reviewed_by"] = request.reviewed_by
    if request.rejection_reason:
        item["rejection_reason"] = request.rejection_reason
    return item


def item_to_request(item: Dict[str, Any]) -> SubscriptionUpgradeRequest:
    return SubscriptionUpgradeRequest(
        request_id=item["request_id"],
        agent_id=item["agent_id"],
        plan_id=item["plan_id"],
        amount_claimed=float(item["amount_claimed"]),
        duration_label=item["duration_label"],
        monthly_listings_claimed=int(item["monthly_listings_claimed"]),
        receipt_reference=item["receipt_reference"],
        review_state=ReviewState(item["review_state"]),
        created_at=parse_timestamp(item["created_at"]),
        reviewed_at=parse_timestamp(item["reviewed_at"]) if "reviewed_at" in item else None,
        reviewed_by=item.get("reviewed_by"),
        rejection_reason=item.get("rejection_reason"),
    )


class UpgradeRequestStore:
    def __init__(self, table_name: Optional[str] = None):
        self.table_name = table_name or os.environ.get(
            "UPGRADE_REQUESTS_TABLE_NAME", "portal-upgrade-requests"
        )
        self._table = None

    @property
    def table(self):
        """Lazy initialization of DynamoDB table"""
        if self._table is None:
            self._table = get_ddb_table(self.table_name)
        return self._table

    def create(self, request: SubscriptionUpgradeRequest) -> SubscriptionUpgradeRequest:
        with store_errors(f"creating upgrade request {request.request_id}"):
            self.table.put_item(
                Item=request_to_item(request),
                ConditionExpression="attribute_not_exists(request_id)",  # Prevent overwrites
            )
        logger.info(
            f"Created upgrade request {request.request_id} for agent {request.agent_id}",
            extra={"plan_id": request.plan_id},
        )
        return request

    def get(self, request_id: str) -> Optional[SubscriptionUpgradeRequest]:
        with store_errors(f"getting upgrade request {request_id}"):
            response = self.table.get_item(Key={"request_id": request_id})
        item = response.get("Item")
        if not item:
            return None
        return item_to_request(item)

    def review_item(
        self,
        request_id: str,
        new_state: ReviewState,
        reviewed_by: str,
        now: datetime,
        rejection_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Transaction item moving a request out of pending, conditional on it still being pending."""
        update_expression = "SET review_state = :new_state, reviewed_at = :now, reviewed_by = :by"
        values: Dict[str, Any] = {
            ":new_state": new_state.value,
            ":pending": ReviewState.PENDING.value,
            ":now": now.isoformat(),
            ":by": reviewed_by,
        }
        if rejection_reason:
            update_expression += ", rejection_reason = :reason"
            values[":reason"] = rejection_reason
        return {
            "Update": {
                "TableName": self.table_name,
                "Key": to_attribute_values({"request_id": request_id}),
                "UpdateExpression": update_expression,
                "ConditionExpression": "attribute_exists(request_id) AND review_state = :pending",
                "ExpressionAttributeValues": to_attribute_values(values),
            }
        }

    def mark_rejected(
        self, request_id: str, reviewed_by: str, now: datetime, reason: Optional[str] = None
    ) -> bool:
        """
        Move a pending request to rejected.

        Returns:
            bool: False when the request is missing or no longer pending.
        """
        try:
            transact_write(
                [self.review_item(request_id, ReviewState.REJECTED, reviewed_by, now, reason)]
            )
        except TransactionConflict:
            return False
        logger.info(f"Rejected upgrade request {request_id}", extra={"reviewed_by": reviewed_by})
        return True

    def _query(self, query_args: Dict[str, Any], action: str) -> List[SubscriptionUpgradeRequest]:
        requests: List[SubscriptionUpgradeRequest] = []
        with store_errors(action):
            while True:
                response = self.table.query(**query_args)
                requests.extend(item_to_request(item) for item in response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                query_args["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return requests

    def list_by_state(self, review_state: ReviewState) -> List[SubscriptionUpgradeRequest]:
        """Requests in the given review state, newest first."""
        return self._query(
            {
                "IndexName": REVIEW_STATE_INDEX,
                "KeyConditionExpression": Key("review_state").eq(review_state.value),
                "ScanIndexForward": False,
            },
            f"listing {review_state.value} upgrade requests",
        )

    def list_by_agent(self, agent_id: str) -> List[SubscriptionUpgradeRequest]:
        """Requests submitted by one agent, newest first."""
        return self._query(
            {
                "IndexName": AGENT_INDEX,
                "KeyConditionExpression": Key("agent_id").eq(agent_id),
                "ScanIndexForward": False,
            },
            f"listing upgrade requests of {agent_id}",
        )
