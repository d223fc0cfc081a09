from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from portal_core.models.entitlement import AccountStatus, Role, SubscriptionTier, WindowUnit, WindowedQuota
from portal_core.models.errors import (
    IdentityNotFound,
    InvalidDuration,
    InvalidStateTransition,
    PersistenceFailure,
    UnknownPlan,
    UpgradeRequestNotFound,
)
from portal_core.models.upgrade_request import ReviewState
from portal_core.services.approval_workflow import ApprovalWorkflowController
from portal_core.services.aws import get_dynamodb_client
from portal_core.services.upgrade_request_store import UpgradeRequestStore
from tests.fixtures.ddb import create_all_tables, put_agent, put_role, put_upgrade_request

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def setup_pending_request(tables, duration_label="monthly", monthly_listings=20):
    put_role(tables["users"], "admin-1", Role.ADMINISTRATOR)
    put_agent(tables["users"], "agent-1", now=NOW - timedelta(days=10))
    return put_upgrade_request(
        tables["upgrade_requests"], "req-1", "agent-1", NOW - timedelta(hours=2),
        duration_label=duration_label, monthly_listings=monthly_listings,
    )


@mock_aws
def test_approve_signup_once():
    tables = create_all_tables()
    put_agent(tables["users"], "agent-1", AccountStatus.PENDING_APPROVAL, NOW)
    workflow = ApprovalWorkflowController()

    profile = workflow.approve_signup("agent-1", "admin-1", NOW)
    assert profile.status == AccountStatus.APPROVED

    with pytest.raises(InvalidStateTransition) as exc_info:
        workflow.approve_signup("agent-1", "admin-2", NOW)
    assert exc_info.value.current_state == AccountStatus.APPROVED.value

    with pytest.raises(IdentityNotFound):
        workflow.approve_signup("ghost", "admin-1", NOW)


@mock_aws
def test_reject_signup_deletes_role_and_profile():
    tables = create_all_tables()
    put_agent(tables["users"], "agent-1", AccountStatus.PENDING_APPROVAL, NOW)
    workflow = ApprovalWorkflowController()

    workflow.reject_signup("agent-1", "admin-1")
    assert workflow.users.get_profile("agent-1") is None
    assert workflow.users.get_role("agent-1") is None

    with pytest.raises(IdentityNotFound):
        workflow.reject_signup("agent-1", "admin-1")


@mock_aws
def test_reject_approved_signup_is_invalid_and_deletes_nothing():
    tables = create_all_tables()
    put_agent(tables["users"], "agent-1", AccountStatus.APPROVED, NOW)
    workflow = ApprovalWorkflowController()

    with pytest.raises(InvalidStateTransition):
        workflow.reject_signup("agent-1", "admin-1")
    assert workflow.users.get_role("agent-1") == Role.AGENT
    assert workflow.users.get_profile("agent-1") is not None


@mock_aws
def test_list_pending_signups():
    tables = create_all_tables()
    put_agent(tables["users"], "agent-1", AccountStatus.PENDING_APPROVAL, NOW)
    put_agent(tables["users"], "agent-2", AccountStatus.APPROVED, NOW)
    signups = ApprovalWorkflowController().list_pending_signups()
    assert [profile.user_id for profile in signups] == ["agent-1"]


@mock_aws
def test_submit_upgrade_request_copies_plan():
    tables = create_all_tables()
    put_agent(tables["users"], "agent-1", now=NOW)
    workflow = ApprovalWorkflowController()

    request = workflow.submit_upgrade_request("agent-1", "monthly-pro", "receipts/agent-1/r.jpg", NOW)
    assert request.review_state == ReviewState.PENDING
    assert request.amount_claimed == 1000
    assert request.monthly_listings_claimed == 35
    assert request.duration_label == "1 month"

    assert [r.request_id for r in workflow.list_agent_requests("agent-1")] == [request.request_id]
    assert [r.request_id for r in workflow.list_upgrade_requests(ReviewState.PENDING)] == [request.request_id]

    with pytest.raises(UnknownPlan):
        workflow.submit_upgrade_request("agent-1", "lifetime", "receipts/x.jpg", NOW)
    with pytest.raises(IdentityNotFound):
        workflow.submit_upgrade_request("ghost", "monthly-pro", "receipts/x.jpg", NOW)


@mock_aws
def test_approve_upgrade_activates_plan_from_request():
    tables = create_all_tables()
    setup_pending_request(tables, monthly_listings=20)
    workflow = ApprovalWorkflowController()

    window = workflow.approve_upgrade("req-1", "admin-1", NOW)
    assert window.end_date == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)

    request = workflow.requests.get("req-1")
    assert request.review_state == ReviewState.APPROVED
    assert request.reviewed_by == "admin-1"

    profile = workflow.users.get_profile("agent-1")
    assert profile.subscription_tier == SubscriptionTier.PRO
    assert profile.quota_policy == WindowedQuota(unit=WindowUnit.MONTH, limit=20)
    assert profile.subscription_request_id == "req-1"


@mock_aws
def test_approve_upgrade_resolves_catalogue_duration_label():
    tables = create_all_tables()
    setup_pending_request(tables, duration_label="6 months", monthly_listings=50)
    window = ApprovalWorkflowController().approve_upgrade("req-1", "admin-1", NOW)
    assert window.end_date == datetime(2026, 9, 15, 12, 0, tzinfo=timezone.utc)


@mock_aws
def test_approve_upgrade_with_unresolvable_duration_changes_nothing():
    tables = create_all_tables()
    setup_pending_request(tables, duration_label="until further notice")
    workflow = ApprovalWorkflowController()

    with pytest.raises(InvalidDuration):
        workflow.approve_upgrade("req-1", "admin-1", NOW)
    assert workflow.requests.get("req-1").is_pending

    end = datetime(2026, 12, 31, tzinfo=timezone.utc)
    assert workflow.approve_upgrade("req-1", "admin-1", NOW, end_date=end).end_date == end


@mock_aws
def test_double_processing_is_rejected():
    tables = create_all_tables()
    setup_pending_request(tables)
    workflow = ApprovalWorkflowController()

    workflow.approve_upgrade("req-1", "admin-1", NOW)
    with pytest.raises(InvalidStateTransition):
        workflow.approve_upgrade("req-1", "admin-1", NOW)
    with pytest.raises(InvalidStateTransition):
        workflow.reject_upgrade("req-1", "admin-1", NOW)
    with pytest.raises(UpgradeRequestNotFound):
        workflow.approve_upgrade("missing", "admin-1", NOW)


@mock_aws
def test_reject_upgrade_leaves_profile_untouched():
    tables = create_all_tables()
    setup_pending_request(tables)
    workflow = ApprovalWorkflowController()

    workflow.reject_upgrade("req-1", "admin-1", NOW, reason="Receipt unreadable")
    request = workflow.requests.get("req-1")
    assert request.review_state == ReviewState.REJECTED
    assert request.rejection_reason == "Receipt unreadable"
    assert workflow.users.get_profile("agent-1").subscription_tier == SubscriptionTier.FREE
    assert workflow.list_upgrade_requests(ReviewState.REJECTED)[0].request_id == "req-1"


@mock_aws
def test_racing_reject_after_approve_loses():
    tables = create_all_tables()
    setup_pending_request(tables)
    first = ApprovalWorkflowController()
    second = ApprovalWorkflowController()
    stale = second.requests.get("req-1")

    first.approve_upgrade("req-1", "admin-1", NOW)
    current = second.requests.get("req-1")

    # The second administrator read the request before the approval landed
    with patch.object(second.requests, "get", side_effect=[stale, current]):
        with pytest.raises(InvalidStateTransition) as exc_info:
            second.reject_upgrade("req-1", "admin-2", NOW)
    assert exc_info.value.current_state == ReviewState.APPROVED.value

    assert first.requests.get("req-1").review_state == ReviewState.APPROVED
    assert first.users.get_profile("agent-1").subscription_tier == SubscriptionTier.PRO


@mock_aws
def test_racing_approve_after_reject_loses_and_profile_stays_free():
    tables = create_all_tables()
    setup_pending_request(tables)
    first = ApprovalWorkflowController()
    second = ApprovalWorkflowController()
    stale = second.requests.get("req-1")

    first.reject_upgrade("req-1", "admin-1", NOW)
    current = second.requests.get("req-1")

    with patch.object(second.requests, "get", side_effect=[stale, current]):
        with pytest.raises(InvalidStateTransition) as exc_info:
            second.approve_upgrade("req-1", "admin-2", NOW)
    assert exc_info.value.current_state == ReviewState.REJECTED.value

    profile = first.users.get_profile("agent-1")
    assert profile.subscription_tier == SubscriptionTier.FREE
    assert profile.subscription_window is None


@mock_aws
def test_profile_failure_leaves_request_pending():
    tables = create_all_tables()
    setup_pending_request(tables)
    tables["users"].delete_item(Key={"PK": "USER#agent-1", "SK": "PROFILE"})
    workflow = ApprovalWorkflowController()

    with pytest.raises(IdentityNotFound):
        workflow.approve_upgrade("req-1", "admin-1", NOW)
    assert UpgradeRequestStore().get("req-1").is_pending


@mock_aws
def test_store_failure_during_approval_writes_nothing():
    tables = create_all_tables()
    setup_pending_request(tables)
    workflow = ApprovalWorkflowController()
    error = ClientError(
        {"Error": {"Code": "InternalServerError", "Message": "Internal server error"}}, "TransactWriteItems"
    )

    with patch.object(get_dynamodb_client(), "transact_write_items", side_effect=error):
        with pytest.raises(PersistenceFailure):
            workflow.approve_upgrade("req-1", "admin-1", NOW)

    assert workflow.requests.get("req-1").is_pending
    assert workflow.users.get_profile("agent-1").subscription_tier == SubscriptionTier.FREE

    # Retrying after the failure is safe
    workflow.approve_upgrade("req-1", "admin-1", NOW)
    assert workflow.users.get_profile("agent-1").subscription_tier == SubscriptionTier.PRO
