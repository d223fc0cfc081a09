"""
Approval Workflow Controller

Two review queues driven by administrators:

* signups: ``pending_approval -> approved`` or deletion of the identity
* upgrade requests: ``pending -> approved`` (activates the paid plan) or
  ``pending -> rejected``

Every transition is a compare-and-set on the current state, so when two
administrators race exactly one of them wins and the other gets
InvalidStateTransition.
"""

import uuid
from datetime import datetime
from typing import List, Optional
from aws_lambda_powertools import Logger

from portal_core.models.entitlement import AccountStatus, AgentProfile, SubscriptionWindow, ensure_utc
from portal_core.models.errors import (
    IdentityNotFound,
    InvalidDuration,
    InvalidStateTransition,
    UpgradeRequestNotFound,
)
from portal_core.models.upgrade_request import (
    ReviewState,
    SubscriptionUpgradeRequest,
    get_plan,
)
from portal_core.services.aws import TransactionConflict, transact_write
from portal_core.services.identity_service import AccountStatusResolver
from portal_core.services.subscription_service import (
    SubscriptionLedger,
    compute_end_date,
    duration_delta,
)
from portal_core.services.upgrade_request_store import UpgradeRequestStore
from portal_core.services.user_service import UserService

logger = Logger()


class ApprovalWorkflowController:
    """Applies administrator decisions on signups and upgrade requests"""

    def __init__(
        self,
        users: Optional[UserService] = None,
        requests: Optional[UpgradeRequestStore] = None,
        ledger: Optional[SubscriptionLedger] = None,
        statuses: Optional[AccountStatusResolver] = None,
    ):
        self.users = users or UserService()
        self.requests = requests or UpgradeRequestStore()
        self.ledger = ledger or SubscriptionLedger(self.users)
        self.statuses = statuses

    def _signup_conflict(self, user_id: str, attempted: str) -> InvalidStateTransition:
        """Explain why a signup transition lost its compare-and-set."""
        profile = self.users.get_profile(user_id)
        if profile is None:
            raise IdentityNotFound(user_id)
        return InvalidStateTransition("signup", user_id, profile.status.value, attempted)

    def _forget_status(self, user_id: str) -> None:
        if self.statuses is not None:
            self.statuses.invalidate(user_id)

    # Signup queue

    def list_pending_signups(self) -> List[AgentProfile]:
        return self.users.list_profiles_by_status(AccountStatus.PENDING_APPROVAL)

    def approve_signup(self, user_id: str, reviewer_id: str, now: datetime) -> AgentProfile:
        """
        Approve a pending signup.

        Raises:
            IdentityNotFound: no profile for the user
            InvalidStateTransition: the signup was already approved
            PersistenceFailure: the profile store failed
        """
        if not self.users.mark_approved(user_id, reviewer_id, ensure_utc(now)):
            raise self._signup_conflict(user_id, "approve")
        self._forget_status(user_id)
        profile = self.users.get_profile(user_id)
        if profile is None:
            raise IdentityNotFound(user_id)
        return profile

    def reject_signup(self, user_id: str, reviewer_id: str) -> None:
        """
        Reject a pending signup, deleting its profile and role grant together.

        Raises:
            IdentityNotFound: the user does not exist (or was already rejected)
            InvalidStateTransition: the signup was already approved
            PersistenceFailure: the store failed; nothing was deleted
        """
        try:
            transact_write(self.users.removal_items(user_id))
        except TransactionConflict as e:
            raise self._signup_conflict(user_id, "reject") from e
        self._forget_status(user_id)
        logger.info(f"Rejected signup for user {user_id}", extra={"reviewed_by": reviewer_id})

    # Upgrade queue

    def submit_upgrade_request(
        self, agent_id: str, plan_id: str, receipt_reference: str, now: datetime
    ) -> SubscriptionUpgradeRequest:
        """
        Record an agent's payment receipt for a catalogue plan as a pending request.

        Raises:
            UnknownPlan: plan_id is not in the catalogue
            IdentityNotFound: the agent has no profile
        """
        plan = get_plan(plan_id)
        if self.users.get_profile(agent_id) is None:
            raise IdentityNotFound(agent_id)
        request = SubscriptionUpgradeRequest(
            request_id=str(uuid.uuid4()),
            agent_id=agent_id,
            plan_id=plan.plan_id,
            amount_claimed=plan.price or 0,
            duration_label=plan.duration_label,
            monthly_listings_claimed=plan.monthly_listing_limit,
            receipt_reference=receipt_reference,
            created_at=ensure_utc(now),
        )
        return self.requests.create(request)

    def list_upgrade_requests(self, review_state: ReviewState = ReviewState.PENDING) -> List[SubscriptionUpgradeRequest]:
        return self.requests.list_by_state(review_state)

    def list_agent_requests(self, agent_id: str) -> List[SubscriptionUpgradeRequest]:
        return self.requests.list_by_agent(agent_id)

    def _require_pending_request(self, request_id: str, attempted: str) -> SubscriptionUpgradeRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise UpgradeRequestNotFound(request_id)
        if not request.is_pending:
            raise InvalidStateTransition("upgrade request", request_id, request.review_state.value, attempted)
        return request

    def _request_conflict(self, request_id: str, attempted: str) -> InvalidStateTransition:
        request = self.requests.get(request_id)
        if request is None:
            raise UpgradeRequestNotFound(request_id)
        return InvalidStateTransition("upgrade request", request_id, request.review_state.value, attempted)

    def approve_upgrade(
        self,
        request_id: str,
        reviewer_id: str,
        now: datetime,
        end_date: Optional[datetime] = None,
    ) -> SubscriptionWindow:
        """
        Approve a pending upgrade request and activate the paid plan.

        The request transition and the profile update are one transaction:
        if either condition fails nothing is written and the request stays
        pending.

        Args:
            request_id: Upgrade request to approve
            reviewer_id: Administrator performing the review
            now: Review time, also the start of the subscription
            end_date: Explicit end for durations other than monthly/yearly

        Returns:
            SubscriptionWindow: The activated window

        Raises:
            UpgradeRequestNotFound: no such request
            InvalidStateTransition: the request is no longer pending
            IdentityNotFound: the requesting agent has no profile
            InvalidDuration: custom duration without a resolvable end date
            PersistenceFailure: the store failed; nothing was written
        """
        now = ensure_utc(now)
        request = self._require_pending_request(request_id, "approve")

        if end_date is None:
            delta = duration_delta(request.duration_label)
            if delta is None:
                raise InvalidDuration(request.duration_label)
            end_date = compute_end_date(now, request.duration_label, now + delta)

        guard = self.requests.review_item(request_id, ReviewState.APPROVED, reviewer_id, now)
        try:
            window = self.ledger.activate_pro(
                request.agent_id,
                request.to_plan(),
                request.duration_label,
                now,
                end_date=end_date,
                request_id=request_id,
                guard_items=[guard],
            )
        except TransactionConflict as e:
            raise self._request_conflict(request_id, "approve") from e

        self._forget_status(request.agent_id)
        logger.info(
            f"Approved upgrade request {request_id} for agent {request.agent_id}",
            extra={"reviewed_by": reviewer_id, "plan_id": request.plan_id},
        )
        return window

    def reject_upgrade(
        self, request_id: str, reviewer_id: str, now: datetime, reason: Optional[str] = None
    ) -> None:
        """
        Reject a pending upgrade request. The agent's profile is untouched.

        Raises:
            UpgradeRequestNotFound: no such request
            InvalidStateTransition: the request is no longer pending
            PersistenceFailure: the store failed
        """
        self._require_pending_request(request_id, "reject")
        if not self.requests.mark_rejected(request_id, reviewer_id, ensure_utc(now), reason):
            raise self._request_conflict(request_id, "reject")
