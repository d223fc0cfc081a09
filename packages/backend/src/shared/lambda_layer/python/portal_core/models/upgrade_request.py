from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional

from portal_core.constants.subscription_plans import CURRENCY, PAID_PLANS
from portal_core.models.entitlement import ensure_utc
from portal_core.models.errors import UnknownPlan


class ReviewState(str, Enum):
    """Review state of an upgrade request; approved and rejected are terminal"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SubscriptionPlan(BaseModel):
    """A paid plan as approved for an agent"""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: Optional[str] = None
    price: Optional[float] = None
    currency: str = CURRENCY
    duration_label: str
    monthly_listing_limit: int = Field(ge=0)


def get_plan(plan_id: str) -> SubscriptionPlan:
    """Look up a plan in the catalogue."""
    for plan in PAID_PLANS:
        if plan["plan_id"] == plan_id:
            return SubscriptionPlan(**plan)
    raise UnknownPlan(plan_id)


def list_plans() -> list[SubscriptionPlan]:
    return [SubscriptionPlan(**plan) for plan in PAID_PLANS]


class SubscriptionUpgradeRequest(BaseModel):
    """Agent-submitted request to move to a paid plan, reviewed by an administrator"""
    request_id: str
    agent_id: str
    plan_id: str
    amount_claimed: float = Field(ge=0, description="Amount shown on the uploaded receipt")
    duration_label: str
    monthly_listings_claimed: int = Field(ge=0)
    receipt_reference: str = Field(description="Storage key of the uploaded receipt")
    review_state: ReviewState = Field(default=ReviewState.PENDING)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reviewed_at: Optional[datetime] = Field(default=None)
    reviewed_by: Optional[str] = Field(default=None)
    rejection_reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("created_at", "reviewed_at")
    @classmethod
    def make_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else v

    @property
    def is_pending(self) -> bool:
        return self.review_state == ReviewState.PENDING

    def to_plan(self) -> SubscriptionPlan:
        """The plan to activate, with the listing limit taken from this request."""
        return SubscriptionPlan(
            plan_id=self.plan_id,
            price=self.amount_claimed,
            duration_label=self.duration_label,
            monthly_listing_limit=self.monthly_listings_claimed,
        )
