"""
Listing quota evaluation.

The window arithmetic is pure and works on creation timestamps;
ListingQuotaService wires it to the stores for a signed-in session.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional
from aws_lambda_powertools import Logger

from portal_core.models.decision import Allow, Deny, DenyReason, ListingDecision
from portal_core.models.entitlement import (
    AccountStatus,
    AgentProfile,
    Role,
    Session,
    UnlimitedQuota,
    WindowUnit,
    WindowedQuota,
    ensure_utc,
)
from portal_core.models.errors import IdentityNotFound
from portal_core.services.identity_service import RoleResolver
from portal_core.services.listing_store import ListingStore
from portal_core.services.subscription_service import SubscriptionLedger
from portal_core.services.user_service import UserService

logger = Logger()

WEEK_DAYS = 7


def in_window(created_at: datetime, unit: WindowUnit, now: datetime) -> bool:
    """Whether a listing created at `created_at` counts against the window containing `now`."""
    now = ensure_utc(now)
    # Compare calendar fields in the caller's timezone
    created_at = ensure_utc(created_at).astimezone(now.tzinfo)
    if unit == WindowUnit.DAY:
        return created_at.date() == now.date()
    if unit == WindowUnit.WEEK:
        return math.ceil((now - created_at).total_seconds() / 86400) <= WEEK_DAYS
    if unit == WindowUnit.MONTH:
        return (created_at.year, created_at.month) == (now.year, now.month)
    if unit == WindowUnit.YEAR:
        return created_at.year == now.year
    return True


def usage_in_window(created_times: Iterable[datetime], unit: WindowUnit, now: datetime) -> int:
    """
    Number of listings counted against the current window.

    For an unlimited policy nothing is evaluated and every listing is counted.
    """
    return sum(1 for created_at in created_times if in_window(created_at, unit, now))


def window_start(unit: WindowUnit, now: datetime) -> Optional[datetime]:
    """Earliest creation time the current window can contain, None when unbounded."""
    now = ensure_utc(now)
    if unit == WindowUnit.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == WindowUnit.WEEK:
        return now - timedelta(days=WEEK_DAYS)
    if unit == WindowUnit.MONTH:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if unit == WindowUnit.YEAR:
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return None


def remaining_allowance(policy: UnlimitedQuota | WindowedQuota, usage: int) -> Optional[int]:
    """Listings still allowed in the window, None when unlimited."""
    if isinstance(policy, UnlimitedQuota):
        return None
    return max(policy.limit - usage, 0)


def can_create_listing(
    profile: AgentProfile, created_times: Iterable[datetime], now: datetime
) -> ListingDecision:
    """Allow, or Deny with AccountNotApproved / QuotaExceeded."""
    if profile.status != AccountStatus.APPROVED:
        return Deny(DenyReason.ACCOUNT_NOT_APPROVED)
    policy = profile.quota_policy
    if isinstance(policy, UnlimitedQuota):
        return Allow()
    if usage_in_window(created_times, policy.unit, now) >= policy.limit:
        return Deny(DenyReason.QUOTA_EXCEEDED)
    return Allow()


def usage_percentage(profile: AgentProfile, created_times: Iterable[datetime], now: datetime) -> int:
    """Share of the window's allowance used, 0..100, rounded half up."""
    policy = profile.quota_policy
    if isinstance(policy, UnlimitedQuota):
        return 0
    usage = usage_in_window(created_times, policy.unit, now)
    if policy.limit == 0:
        return 100
    return min(math.floor(usage / policy.limit * 100 + 0.5), 100)


@dataclass(frozen=True)
class QuotaSnapshot:
    """Listing allowance of one agent at one instant"""

    decision: ListingDecision
    window_unit: Optional[WindowUnit] = None
    usage: int = 0
    limit: Optional[int] = None
    remaining: Optional[int] = None
    percentage: int = 0

    @property
    def allowed(self) -> bool:
        return self.decision.allowed

    def to_dict(self) -> dict:
        data = {
            "allowed": self.allowed,
            "window_unit": self.window_unit.value if self.window_unit else None,
            "usage": self.usage,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "unlimited": self.window_unit == WindowUnit.UNLIMITED,
        }
        if isinstance(self.decision, Deny):
            data["reason"] = self.decision.reason.value
            data["message"] = self.decision.message
        return data


def snapshot(profile: AgentProfile, created_times: Iterable[datetime], now: datetime) -> QuotaSnapshot:
    times = list(created_times)
    policy = profile.quota_policy
    usage = usage_in_window(times, policy.window_unit, now)
    return QuotaSnapshot(
        decision=can_create_listing(profile, times, now),
        window_unit=policy.window_unit,
        usage=usage,
        limit=policy.limit,
        remaining=remaining_allowance(policy, usage),
        percentage=usage_percentage(profile, times, now),
    )


class ListingQuotaService:
    """Evaluates listing quotas for a session, expiring lapsed subscriptions first"""

    def __init__(
        self,
        roles: Optional[RoleResolver] = None,
        users: Optional[UserService] = None,
        listings: Optional[ListingStore] = None,
        ledger: Optional[SubscriptionLedger] = None,
    ):
        self.users = users or UserService()
        self.roles = roles or RoleResolver(self.users)
        self.listings = listings or ListingStore()
        self.ledger = ledger or SubscriptionLedger(self.users)

    def evaluate(self, session: Session, now: datetime) -> QuotaSnapshot:
        """
        Current listing allowance of the session's user.

        Administrators are never subject to quotas and always get Allow.

        Raises:
            IdentityNotFound: no role or profile for the user
            PersistenceFailure: a store read failed
        """
        role = self.roles.resolve_role(session.user_id, session)
        if role == Role.ADMINISTRATOR:
            return QuotaSnapshot(decision=Allow(), window_unit=WindowUnit.UNLIMITED)

        self.ledger.expire_if_past(session.user_id, now)
        profile = self.users.get_profile(session.user_id)
        if profile is None:
            raise IdentityNotFound(session.user_id)

        since = window_start(profile.quota_policy.window_unit, now)
        created_times = self.listings.creation_times(session.user_id, since)
        result = snapshot(profile, created_times, now)
        if isinstance(result.decision, Deny):
            logger.info(
                f"Listing creation denied for agent {session.user_id}",
                extra={"reason": result.decision.reason.value, "usage": result.usage},
            )
        return result
