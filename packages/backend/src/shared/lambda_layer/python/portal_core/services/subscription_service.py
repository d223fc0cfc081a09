"""
Subscription Ledger for the listing portal

Owns the subscription fields of an agent profile: activation of a paid
plan, expiry back to the free tier, administrator downgrades and quota
overrides, and the renewal reminder arithmetic.
"""

import math
import re
from botocore.exceptions import BotoCoreError, ClientError
from datetime import datetime
from dateutil.relativedelta import relativedelta
from typing import Any, Dict, Optional, Sequence
from aws_lambda_powertools import Logger

from portal_core.constants.subscription_plans import (
    CRITICAL_REMINDER_DAYS,
    INFORMATIONAL_REMINDER_DAYS,
    MONTHLY_DURATION,
    WARNING_REMINDER_DAYS,
    YEARLY_DURATION,
)
from portal_core.models.decision import ReminderLevel
from portal_core.models.entitlement import (
    AgentProfile,
    SubscriptionTier,
    SubscriptionWindow,
    UnlimitedQuota,
    WindowUnit,
    WindowedQuota,
    default_quota_policy,
    ensure_utc,
)
from portal_core.models.errors import IdentityNotFound, InvalidDuration, InvalidStateTransition
from portal_core.models.upgrade_request import SubscriptionPlan
from portal_core.services.aws import (
    TransactionConflict,
    is_conditional_check_failure,
    persistence_failure,
    to_attribute_values,
    transact_write,
)
from portal_core.services.user_service import PROFILE_SK, UserService, user_pk

logger = Logger()

_DURATION_PATTERN = re.compile(r"^(\d+)\s*(month|year)s?$")


def duration_delta(duration_label: str) -> Optional[relativedelta]:
    """
    Calendar offset for a duration label.

    Understands ``monthly``, ``yearly`` and labels of the form ``N month(s)`` or
    ``N year(s)``. Returns None for anything else.
    """
    label = duration_label.strip().lower()
    if label == MONTHLY_DURATION:
        return relativedelta(months=1)
    if label == YEARLY_DURATION:
        return relativedelta(years=1)
    match = _DURATION_PATTERN.match(label)
    if not match:
        return None
    count = int(match.group(1))
    if count <= 0:
        return None
    if match.group(2) == "month":
        return relativedelta(months=count)
    return relativedelta(years=count)


def compute_end_date(
    start_date: datetime, duration_label: str, explicit_end: Optional[datetime] = None
) -> datetime:
    """
    End of a subscription started at `start_date`.

    ``monthly`` adds one calendar month and ``yearly`` one calendar year,
    clamped to the last day of the target month. Any other label uses
    `explicit_end`.

    Raises:
        InvalidDuration: custom label without an explicit end date.
    """
    label = duration_label.strip().lower()
    if label == MONTHLY_DURATION:
        return start_date + relativedelta(months=1)
    if label == YEARLY_DURATION:
        return start_date + relativedelta(years=1)
    if explicit_end is None:
        raise InvalidDuration(duration_label)
    return ensure_utc(explicit_end)


def month_anchor(moment: datetime) -> datetime:
    """First instant of the calendar month containing `moment`."""
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def days_until(end_date: datetime, now: datetime) -> int:
    """Whole days left before `end_date`, rounded up; zero or negative once passed."""
    return math.ceil((ensure_utc(end_date) - ensure_utc(now)).total_seconds() / 86400)


def reminder_level(days: Optional[int]) -> ReminderLevel:
    """Renewal reminder severity for the number of days until expiry."""
    if days is None:
        return ReminderLevel.NONE
    if days <= 0:
        return ReminderLevel.EXPIRED
    if days <= CRITICAL_REMINDER_DAYS:
        return ReminderLevel.CRITICAL
    if days <= WARNING_REMINDER_DAYS:
        return ReminderLevel.WARNING
    if days <= INFORMATIONAL_REMINDER_DAYS:
        return ReminderLevel.INFORMATIONAL
    return ReminderLevel.NONE


class SubscriptionLedger:
    """Transitions of the free -> pro -> free subscription lifecycle"""

    def __init__(self, users: Optional[UserService] = None):
        self.users = users or UserService()

    def _require_profile(self, agent_id: str) -> AgentProfile:
        profile = self.users.get_profile(agent_id)
        if profile is None:
            raise IdentityNotFound(agent_id)
        return profile

    def activation_item(
        self,
        agent_id: str,
        plan: SubscriptionPlan,
        window: SubscriptionWindow,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Transaction item switching a profile to pro with the plan's monthly quota."""
        update_expression = (
            "SET subscription_tier = :pro, window_start = :start, window_end = :end, "
            "quota_unit = :unit, quota_limit = :limit, plan_id = :plan_id, "
            "quota_anchor = :anchor, updated_at = :now"
        )
        values: Dict[str, Any] = {
            ":pro": SubscriptionTier.PRO.value,
            ":start": window.start_date.isoformat(),
            ":end": window.end_date.isoformat(),
            ":unit": WindowUnit.MONTH.value,
            ":limit": plan.monthly_listing_limit,
            ":plan_id": plan.plan_id,
            ":anchor": month_anchor(window.start_date).isoformat(),
            ":now": window.start_date.isoformat(),
        }
        if request_id:
            update_expression += ", subscription_request_id = :request_id"
            values[":request_id"] = request_id
        return {
            "Update": {
                "TableName": self.users.table_name,
                "Key": to_attribute_values({"PK": user_pk(agent_id), "SK": PROFILE_SK}),
                "UpdateExpression": update_expression,
                "ConditionExpression": "attribute_exists(PK)",
                "ExpressionAttributeValues": to_attribute_values(values),
            }
        }

    def activate_pro(
        self,
        agent_id: str,
        plan: SubscriptionPlan,
        duration_label: str,
        start_date: datetime,
        end_date: Optional[datetime] = None,
        request_id: Optional[str] = None,
        guard_items: Sequence[Dict[str, Any]] = (),
    ) -> SubscriptionWindow:
        """
        Activate a paid plan for an agent.

        The profile update is written in one transaction together with
        `guard_items` (the caller's preconditions, e.g. the upgrade request
        still being pending): either everything is applied or nothing is.

        Args:
            agent_id: Agent user id
            plan: Approved plan; its monthly_listing_limit becomes the quota
            duration_label: ``monthly``, ``yearly`` or a custom label
            start_date: Start of the subscription window
            end_date: Explicit end date, required for custom labels
            request_id: Upgrade request the activation comes from
            guard_items: Extra transaction items applied atomically with the profile update

        Returns:
            SubscriptionWindow: The persisted window

        Raises:
            TransactionConflict: a guard item's condition failed; nothing was written
            IdentityNotFound: the agent has no profile
            InvalidDuration: custom label without an explicit end date
            PersistenceFailure: the store failed; nothing was written
        """
        start_date = ensure_utc(start_date)
        window = SubscriptionWindow(
            start_date=start_date,
            end_date=compute_end_date(start_date, duration_label, end_date),
        )
        items = [*guard_items, self.activation_item(agent_id, plan, window, request_id)]
        profile_index = len(items) - 1

        try:
            transact_write(items)
        except TransactionConflict as e:
            if any(index != profile_index for index in e.failed_indexes):
                raise
            raise IdentityNotFound(agent_id) from e

        logger.info(
            f"Activated pro subscription for agent {agent_id}",
            extra={
                "plan_id": plan.plan_id,
                "monthly_listing_limit": plan.monthly_listing_limit,
                "end_date": window.end_date.isoformat(),
                "request_id": request_id,
            },
        )
        return window

    def _reset_to_free(self, agent_id: str, condition: str, values: Dict[str, Any], now: datetime) -> bool:
        free_quota = default_quota_policy()
        try:
            self.users.table.update_item(
                Key={"PK": user_pk(agent_id), "SK": PROFILE_SK},
                UpdateExpression=(
                    "SET subscription_tier = :free, quota_unit = :unit, quota_limit = :limit, updated_at = :now "
                    "REMOVE window_start, window_end, plan_id, subscription_request_id, quota_anchor"
                ),
                ConditionExpression=condition,
                ExpressionAttributeValues={
                    ":free": SubscriptionTier.FREE.value,
                    ":unit": free_quota.unit.value,
                    ":limit": free_quota.limit,
                    ":now": now.isoformat(),
                    **values,
                },
            )
        except (ClientError, BotoCoreError) as e:
            if is_conditional_check_failure(e):
                return False
            raise persistence_failure(e, f"downgrading subscription of {agent_id}") from e
        return True

    def expire_if_past(self, agent_id: str, now: datetime) -> bool:
        """
        Downgrade an expired pro subscription to the free tier.

        Idempotent: returns True only for the call that performed the
        transition, False when there was nothing to expire.
        """
        now = ensure_utc(now)
        profile = self._require_profile(agent_id)
        window = profile.subscription_window
        if profile.subscription_tier != SubscriptionTier.PRO or window is None:
            return False
        if now <= window.end_date:
            return False

        # Only expire the window we looked at; a renewal in between wins
        expired = self._reset_to_free(
            agent_id,
            "subscription_tier = :pro AND window_end = :end",
            {":pro": SubscriptionTier.PRO.value, ":end": window.end_date.isoformat()},
            now,
        )
        if expired:
            logger.info(
                f"Subscription expired for agent {agent_id}, downgraded to free",
                extra={"end_date": window.end_date.isoformat()},
            )
        return expired

    def downgrade(self, agent_id: str, now: datetime) -> None:
        """Administrator-initiated pro -> free transition."""
        now = ensure_utc(now)
        profile = self._require_profile(agent_id)
        if profile.subscription_tier != SubscriptionTier.PRO:
            raise InvalidStateTransition("subscription", agent_id, profile.subscription_tier.value, "downgrade")
        if not self._reset_to_free(
            agent_id, "subscription_tier = :pro", {":pro": SubscriptionTier.PRO.value}, now
        ):
            raise InvalidStateTransition("subscription", agent_id, SubscriptionTier.FREE.value, "downgrade")
        logger.info(f"Downgraded agent {agent_id} to free")

    def days_until_expiry(
        self, agent_id: str, now: datetime, profile: Optional[AgentProfile] = None
    ) -> Optional[int]:
        """
        Days left on the pro subscription, None when the agent is not pro.

        Pass `profile` when the caller already holds the agent's profile.
        """
        profile = profile or self._require_profile(agent_id)
        if profile.subscription_tier != SubscriptionTier.PRO or profile.subscription_window is None:
            return None
        return days_until(profile.subscription_window.end_date, now)

    def set_quota_policy(
        self, agent_id: str, policy: UnlimitedQuota | WindowedQuota, now: datetime
    ) -> None:
        """Administrator override of an agent's listing quota."""
        if not self.users.update_quota_policy(agent_id, policy, ensure_utc(now)):
            raise IdentityNotFound(agent_id)
