from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from typing import Annotated, Any, Literal, Optional, Union

from portal_core.constants.subscription_plans import FREE_LISTING_LIMIT, FREE_QUOTA_WINDOW


def ensure_utc(value: datetime) -> datetime:
    """Return the datetime as timezone-aware, assuming UTC for naive values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse an ISO string (or pass through a datetime) into an aware datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class Role(str, Enum):
    """Role granted to an identity, exactly one per user"""
    ADMINISTRATOR = "super_admin"
    AGENT = "agent"


class AccountStatus(str, Enum):
    """Agent lifecycle status; rejection deletes the profile instead"""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class WindowUnit(str, Enum):
    """Recurring period a listing quota is counted against"""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    UNLIMITED = "unlimited"


class UnlimitedQuota(BaseModel):
    """Quota with no limit and therefore no window to count against"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["unlimited"] = "unlimited"

    @property
    def window_unit(self) -> WindowUnit:
        return WindowUnit.UNLIMITED

    @property
    def limit(self) -> None:
        return None


class WindowedQuota(BaseModel):
    """At most `limit` listings per `unit`"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["windowed"] = "windowed"
    unit: WindowUnit
    limit: int = Field(ge=0, description="Listings allowed per window")

    @field_validator("unit")
    @classmethod
    def reject_unlimited_unit(cls, v: WindowUnit) -> WindowUnit:
        if v == WindowUnit.UNLIMITED:
            raise ValueError("Use UnlimitedQuota for an unlimited policy")
        return v

    @property
    def window_unit(self) -> WindowUnit:
        return self.unit


QuotaPolicy = Annotated[Union[UnlimitedQuota, WindowedQuota], Field(discriminator="kind")]


def default_quota_policy() -> WindowedQuota:
    """Free tier quota applied when an agent has no explicit policy"""
    return WindowedQuota(unit=WindowUnit(FREE_QUOTA_WINDOW), limit=FREE_LISTING_LIMIT)


def parse_quota_policy(data: Optional[dict[str, Any]]) -> UnlimitedQuota | WindowedQuota:
    """
    Build a quota policy from its stored or submitted shape.

    Accepts the tagged form (``{"kind": "windowed", "unit": "week", "limit": 3}``)
    as well as the listing-limit form used by the admin screens
    (``{"type": "month", "value": 5}`` or ``{"type": "unlimited"}``).
    Missing data falls back to the free default.
    """
    if not data:
        return default_quota_policy()
    if "kind" in data:
        if data["kind"] == "unlimited":
            return UnlimitedQuota()
        return WindowedQuota(unit=data["unit"], limit=data["limit"])

    unit = WindowUnit(data.get("type", FREE_QUOTA_WINDOW))
    if unit == WindowUnit.UNLIMITED:
        return UnlimitedQuota()
    if data.get("value") is None:
        raise ValueError(f"Quota window '{unit.value}' requires a value")
    return WindowedQuota(unit=unit, limit=int(data["value"]))


class SubscriptionWindow(BaseModel):
    """Validity period of a paid subscription"""
    model_config = ConfigDict(frozen=True)

    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_order(self) -> "SubscriptionWindow":
        if self.end_date <= self.start_date:
            raise ValueError("Subscription end_date must be after start_date")
        return self


class AgentProfile(BaseModel):
    """Entitlement state of an agent identity"""
    user_id: str = Field(description="Unique user identifier")
    email: Optional[str] = Field(default=None)
    status: AccountStatus = Field(default=AccountStatus.PENDING_APPROVAL)
    subscription_tier: SubscriptionTier = Field(default=SubscriptionTier.FREE)
    subscription_window: Optional[SubscriptionWindow] = Field(default=None)
    quota_policy: QuotaPolicy = Field(default_factory=default_quota_policy)

    # Paid plan bookkeeping
    plan_id: Optional[str] = Field(default=None)
    subscription_request_id: Optional[str] = Field(default=None)
    quota_anchor: Optional[datetime] = Field(
        default=None, description="First instant of the month the paid quota was anchored to"
    )

    approved_at: Optional[datetime] = Field(default=None)
    approved_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_subscription_window(self) -> "AgentProfile":
        if self.subscription_tier == SubscriptionTier.PRO and self.subscription_window is None:
            raise ValueError("A pro subscription requires a subscription window")
        if self.subscription_tier == SubscriptionTier.FREE and self.subscription_window is not None:
            raise ValueError("A free subscription cannot carry a subscription window")
        return self

    @computed_field
    @property
    def is_pro(self) -> bool:
        return self.subscription_tier == SubscriptionTier.PRO

    @computed_field
    @property
    def is_approved(self) -> bool:
        return self.status == AccountStatus.APPROVED


class Session(BaseModel):
    """Authenticated session, created on sign-in and invalidated on sign-out"""
    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str
    email: Optional[str] = None
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = Field(
        default=None, description="Token expiry; session-scoped cache entries are dropped after it"
    )


class ListingRecord(BaseModel):
    """The part of a listing the quota evaluator cares about"""
    model_config = ConfigDict(frozen=True)

    listing_id: str
    owner_id: str
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def parse_created_at(cls, v: Any) -> datetime:
        return parse_timestamp(v)
