"""
User Service for role grants and agent profiles.

Both live in the users table under the same partition key:
``SK = ROLE`` holds the role grant, ``SK = PROFILE`` the agent profile.
"""

import os
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from aws_lambda_powertools import Logger

from portal_core.models.entitlement import (
    AccountStatus,
    AgentProfile,
    Role,
    SubscriptionTier,
    SubscriptionWindow,
    UnlimitedQuota,
    WindowedQuota,
    parse_quota_policy,
    parse_timestamp,
)
from portal_core.services.aws import (
    get_ddb_table,
    is_conditional_check_failure,
    persistence_failure,
    store_errors,
    to_attribute_values,
)

logger = Logger()

PROFILE_SK = "PROFILE"
ROLE_SK = "ROLE"
STATUS_INDEX = "StatusIndex"


def user_pk(user_id: str) -> str:
    return f"USER#{user_id}"


def quota_attributes(policy: UnlimitedQuota | WindowedQuota) -> Dict[str, Any]:
    """Flatten a quota policy into profile attributes."""
    if isinstance(policy, UnlimitedQuota):
        return {"quota_unit": policy.window_unit.value}
    return {"quota_unit": policy.unit.value, "quota_limit": policy.limit}


def profile_to_item(profile: AgentProfile) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "PK": user_pk(profile.user_id),
        "SK": PROFILE_SK,
        "user_id": profile.user_id,
        "status": profile.status.value,
        "subscription_tier": profile.subscription_tier.value,
        "created_at": profile.created_at.isoformat(),
        "updated_at": profile.updated_at.isoformat(),
        **quota_attributes(profile.quota_policy),
    }
    optional = {
        "email": profile.email,
        "plan_id": profile.plan_id,
        "subscription_request_id": profile.subscription_request_id,
        "approved_by": profile.approved_by,
    }
    item.update({key: value for key, value in optional.items() if value is not None})
    if profile.subscription_window:
        item["window_start"] = profile.subscription_window.start_date.isoformat()
        item["window_end"] = profile.subscription_window.end_date.isoformat()
    if profile.quota_anchor:
        item["quota_anchor"] = profile.quota_anchor.isoformat()
    if profile.approved_at:
        item["approved_at"] = profile.approved_at.isoformat()
    return item


def item_to_profile(item: Dict[str, Any]) -> AgentProfile:
    window = None
    if "window_start" in item and "window_end" in item:
        window = SubscriptionWindow(
            start_date=parse_timestamp(item["window_start"]),
            end_date=parse_timestamp(item["window_end"]),
        )
    quota_limit = item.get("quota_limit")
    quota = parse_quota_policy(
        {
            "type": item.get("quota_unit"),
            "value": int(quota_limit) if isinstance(quota_limit, Decimal) else quota_limit,
        }
        if "quota_unit" in item
        else None
    )
    return AgentProfile(
        user_id=item["user_id"],
        email=item.get("email"),
        status=AccountStatus(item["status"]),
        subscription_tier=SubscriptionTier(item.get("subscription_tier", SubscriptionTier.FREE.value)),
        subscription_window=window,
        quota_policy=quota,
        plan_id=item.get("plan_id"),
        subscription_request_id=item.get("subscription_request_id"),
        quota_anchor=parse_timestamp(item["quota_anchor"]) if "quota_anchor" in item else None,
        approved_at=parse_timestamp(item["approved_at"]) if "approved_at" in item else None,
        approved_by=item.get("approved_by"),
        created_at=parse_timestamp(item["created_at"]),
        updated_at=parse_timestamp(item["updated_at"]),
    )


class UserService:
    """Service for role grants and agent profile records."""

    def __init__(self, table_name: Optional[str] = None):
        self.table_name = table_name or os.environ.get("USERS_TABLE_NAME", "portal-users")
        self._table = None

    @property
    def table(self):
        """Lazy initialization of DynamoDB table"""
        if self._table is None:
            self._table = get_ddb_table(self.table_name)
        return self._table

    def get_role(self, user_id: str) -> Optional[Role]:
        """Get the role granted to the user, None if there is no grant."""
        with store_errors(f"getting role for {user_id}"):
            response = self.table.get_item(Key={"PK": user_pk(user_id), "SK": ROLE_SK})
        item = response.get("Item")
        if not item:
            return None
        return Role(item["role"])

    def get_profile(self, user_id: str) -> Optional[AgentProfile]:
        """Get the agent profile, None if the user has none."""
        with store_errors(f"getting profile for {user_id}"):
            response = self.table.get_item(Key={"PK": user_pk(user_id), "SK": PROFILE_SK})
        item = response.get("Item")
        if not item:
            return None
        return item_to_profile(item)

    def registration_items(self, user_id: str, email: Optional[str], now: datetime) -> List[Dict[str, Any]]:
        """Transaction items creating the agent role grant and its pending profile."""
        profile = AgentProfile(user_id=user_id, email=email, created_at=now, updated_at=now)
        role_item = {
            "PK": user_pk(user_id),
            "SK": ROLE_SK,
            "user_id": user_id,
            "role": Role.AGENT.value,
            "created_at": now.isoformat(),
        }
        return [
            {
                "Put": {
                    "TableName": self.table_name,
                    "Item": to_attribute_values(role_item),
                    "ConditionExpression": "attribute_not_exists(PK)",
                }
            },
            {
                "Put": {
                    "TableName": self.table_name,
                    "Item": to_attribute_values(profile_to_item(profile)),
                    "ConditionExpression": "attribute_not_exists(PK)",
                }
            },
        ]

    def removal_items(self, user_id: str) -> List[Dict[str, Any]]:
        """Transaction items deleting a pending agent's profile and role grant."""
        return [
            {
                "Delete": {
                    "TableName": self.table_name,
                    "Key": to_attribute_values({"PK": user_pk(user_id), "SK": PROFILE_SK}),
                    "ConditionExpression": "#status = :pending",
                    "ExpressionAttributeNames": {"#status": "status"},
                    "ExpressionAttributeValues": to_attribute_values(
                        {":pending": AccountStatus.PENDING_APPROVAL.value}
                    ),
                }
            },
            {
                "Delete": {
                    "TableName": self.table_name,
                    "Key": to_attribute_values({"PK": user_pk(user_id), "SK": ROLE_SK}),
                    "ConditionExpression": "attribute_exists(PK)",
                }
            },
        ]

    def mark_approved(self, user_id: str, approved_by: str, now: datetime) -> bool:
        """
        Move a pending profile to approved.

        Returns:
            bool: False when the profile is missing or no longer pending.
        """
        try:
            self.table.update_item(
                Key={"PK": user_pk(user_id), "SK": PROFILE_SK},
                UpdateExpression="SET #status = :approved, approved_at = :now, approved_by = :by, updated_at = :now",
                ConditionExpression="attribute_exists(PK) AND #status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":approved": AccountStatus.APPROVED.value,
                    ":pending": AccountStatus.PENDING_APPROVAL.value,
                    ":now": now.isoformat(),
                    ":by": approved_by,
                },
            )
        except (ClientError, BotoCoreError) as e:
            if is_conditional_check_failure(e):
                return False
            raise persistence_failure(e, f"approving signup {user_id}") from e
        logger.info(f"Approved signup for user {user_id}", extra={"approved_by": approved_by})
        return True

    def update_quota_policy(self, user_id: str, policy: UnlimitedQuota | WindowedQuota, now: datetime) -> bool:
        """Replace the quota policy of an existing profile; False if there is no profile."""
        attributes = quota_attributes(policy)
        update_expression = "SET quota_unit = :unit, updated_at = :now"
        values: Dict[str, Any] = {":unit": attributes["quota_unit"], ":now": now.isoformat()}
        if "quota_limit" in attributes:
            update_expression += ", quota_limit = :limit"
            values[":limit"] = attributes["quota_limit"]
        else:
            update_expression += " REMOVE quota_limit"
        try:
            self.table.update_item(
                Key={"PK": user_pk(user_id), "SK": PROFILE_SK},
                UpdateExpression=update_expression,
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues=values,
            )
        except (ClientError, BotoCoreError) as e:
            if is_conditional_check_failure(e):
                return False
            raise persistence_failure(e, f"updating quota policy for {user_id}") from e
        logger.info(f"Updated quota policy for user {user_id} to {attributes}")
        return True

    def list_profiles_by_status(self, status: AccountStatus) -> List[AgentProfile]:
        """Profiles in the given status, newest signup first."""
        profiles: List[AgentProfile] = []
        query_args: Dict[str, Any] = {
            "IndexName": STATUS_INDEX,
            "KeyConditionExpression": Key("status").eq(status.value),
            "ScanIndexForward": False,
        }
        with store_errors(f"listing {status.value} profiles"):
            while True:
                response = self.table.query(**query_args)
                profiles.extend(item_to_profile(item) for item in response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                query_args["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return profiles
