"""Decision values returned by the access decision engine and the quota evaluator."""
from dataclasses import dataclass
from enum import Enum
from typing import Union


class RedirectTarget(str, Enum):
    """Portal paths a denied request is sent to"""
    SIGN_IN = "/auth"
    ADMIN_HOME = "/admin"
    AGENT_HOME = "/dashboard"
    PENDING_APPROVAL = "/pending"


class DenyReason(str, Enum):
    """User-facing reasons a listing cannot be created"""
    ACCOUNT_NOT_APPROVED = "AccountNotApproved"
    QUOTA_EXCEEDED = "QuotaExceeded"


DENY_MESSAGES = {
    DenyReason.ACCOUNT_NOT_APPROVED: "Your account is waiting for administrator approval.",
    DenyReason.QUOTA_EXCEEDED: "You have reached your listing limit. Upgrade your plan to publish more.",
}


class ReminderLevel(str, Enum):
    """Renewal reminder severity derived from days until expiry"""
    EXPIRED = "expired"
    CRITICAL = "critical"
    WARNING = "warning"
    INFORMATIONAL = "informational"
    NONE = "none"


@dataclass(frozen=True)
class Allow:
    allowed: bool = True


@dataclass(frozen=True)
class Redirect:
    target: RedirectTarget
    allowed: bool = False


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    allowed: bool = False

    @property
    def message(self) -> str:
        return DENY_MESSAGES[self.reason]


AccessDecision = Union[Allow, Redirect]
ListingDecision = Union[Allow, Deny]
