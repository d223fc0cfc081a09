from datetime import datetime, timezone
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import BadRequestError
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict, Optional

from portal_core.models.entitlement import Role, parse_quota_policy
from portal_core.models.upgrade_request import ReviewState
from portal_core.services.approval_workflow import ApprovalWorkflowController
from portal_core.services.identity_service import SessionManager
from portal_core.services.subscription_service import SubscriptionLedger
from portal_core.utils.access_middleware import access_check, current_session
from portal_core.utils.http_errors import register_error_handlers

# Initialize the logger
logger = Logger()

# Configure CORS
cors_config = CORSConfig(
    allow_origin="*",  # In production, specify your actual domain
)

# Initialize the APIGatewayRestResolver
app = APIGatewayRestResolver(cors=cors_config)
register_error_handlers(app)

sessions = SessionManager()
workflow = ApprovalWorkflowController(users=sessions.roles.users, statuses=sessions.statuses)
ledger = SubscriptionLedger(sessions.roles.users)

ADMIN_ONLY = {Role.ADMINISTRATOR}


class ApproveUpgradeBody(BaseModel):
    end_date: Optional[datetime] = Field(default=None, description="Explicit end for custom durations")


class RejectBody(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def _json_body() -> Dict[str, Any]:
    if not app.current_event.body:
        return {}
    body = app.current_event.json_body
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


def _reviewer_id() -> str:
    return current_session(app).user_id


@app.get("/admin/signups")
@access_check(app, sessions, ADMIN_ONLY)
def list_pending_signups() -> Dict[str, Any]:
    """
    Signups waiting for review, newest first
    """
    profiles = workflow.list_pending_signups()
    return {"signups": [profile.model_dump(mode="json") for profile in profiles]}


@app.post("/admin/signups/<user_id>/approve")
@access_check(app, sessions, ADMIN_ONLY)
def approve_signup(user_id: str) -> Dict[str, Any]:
    profile = workflow.approve_signup(user_id, _reviewer_id(), datetime.now(timezone.utc))
    return {"success": True, "profile": profile.model_dump(mode="json")}


@app.post("/admin/signups/<user_id>/reject")
@access_check(app, sessions, ADMIN_ONLY)
def reject_signup(user_id: str) -> Dict[str, Any]:
    workflow.reject_signup(user_id, _reviewer_id())
    return {"success": True, "user_id": user_id}


@app.get("/admin/upgrade-requests")
@access_check(app, sessions, ADMIN_ONLY)
def list_upgrade_requests() -> Dict[str, Any]:
    """
    Upgrade requests in one review state (?state=pending|approved|rejected)
    """
    state = app.current_event.get_query_string_value(name="state", default_value=ReviewState.PENDING.value)
    try:
        review_state = ReviewState(state)
    except ValueError:
        raise BadRequestError(f"Invalid state: {state}")
    requests = workflow.list_upgrade_requests(review_state)
    return {"requests": [request.model_dump(mode="json") for request in requests]}


@app.post("/admin/upgrade-requests/<request_id>/approve")
@access_check(app, sessions, ADMIN_ONLY)
def approve_upgrade(request_id: str) -> Dict[str, Any]:
    """
    Approve a receipt and activate the paid plan
    Optional body: {"end_date": "2026-12-31T00:00:00+00:00"}
    """
    try:
        body = ApproveUpgradeBody(**_json_body())
    except (ValidationError, TypeError) as exc:
        logger.info(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    window = workflow.approve_upgrade(
        request_id, _reviewer_id(), datetime.now(timezone.utc), end_date=body.end_date
    )
    return {"success": True, "request_id": request_id, "subscription_window": window.model_dump(mode="json")}


@app.post("/admin/upgrade-requests/<request_id>/reject")
@access_check(app, sessions, ADMIN_ONLY)
def reject_upgrade(request_id: str) -> Dict[str, Any]:
    try:
        body = RejectBody(**_json_body())
    except (ValidationError, TypeError) as exc:
        logger.info(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    workflow.reject_upgrade(request_id, _reviewer_id(), datetime.now(timezone.utc), body.reason)
    return {"success": True, "request_id": request_id}


@app.put("/admin/agents/<user_id>/quota-policy")
@access_check(app, sessions, ADMIN_ONLY)
def set_quota_policy(user_id: str) -> Dict[str, Any]:
    """
    Override an agent's listing limit
    Expected body: {"type": "month", "value": 10} or {"type": "unlimited"}
    """
    body = _json_body()
    if not body:
        raise BadRequestError("Missing quota policy")
    try:
        policy = parse_quota_policy(body)
    except (ValidationError, TypeError, ValueError, KeyError) as exc:
        logger.info(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid quota policy: {str(exc)}")

    ledger.set_quota_policy(user_id, policy, datetime.now(timezone.utc))
    return {"success": True, "user_id": user_id, "quota_policy": policy.model_dump(mode="json")}


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
