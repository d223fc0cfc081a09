from datetime import datetime, timezone
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import BadRequestError, NotFoundError
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict

from portal_core.constants.subscription_plans import (
    CURRENCY,
    FREE_DESCRIPTION,
    FREE_LISTING_LIMIT,
    FREE_QUOTA_WINDOW,
    PRO_DESCRIPTION,
)
from portal_core.models.entitlement import AccountStatus, Role
from portal_core.models.upgrade_request import list_plans
from portal_core.services.approval_workflow import ApprovalWorkflowController
from portal_core.services.identity_service import SessionManager
from portal_core.services.quota_service import ListingQuotaService
from portal_core.services.subscription_service import SubscriptionLedger, reminder_level
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
users = sessions.roles.users
ledger = SubscriptionLedger(users)
quota_service = ListingQuotaService(roles=sessions.roles, users=users, ledger=ledger)
workflow = ApprovalWorkflowController(users=users, ledger=ledger, statuses=sessions.statuses)

APPROVED_AGENTS = ({Role.AGENT}, {AccountStatus.APPROVED})


class UpgradeRequestBody(BaseModel):
    plan_id: str
    receipt_reference: str = Field(min_length=1, description="Storage key of the uploaded receipt")


@app.get("/subscription")
@access_check(app, sessions, *APPROVED_AGENTS)
def get_subscription() -> Dict[str, Any]:
    """
    Get the agent's current subscription, renewal reminder and listing quota
    """
    session = current_session(app)
    now = datetime.now(timezone.utc)

    # Evaluating the quota expires a lapsed subscription first
    quota = quota_service.evaluate(session, now)
    profile = users.get_profile(session.user_id)
    if profile is None:
        raise NotFoundError(f"No profile for user {session.user_id}")

    window = profile.subscription_window
    days = ledger.days_until_expiry(session.user_id, now, profile)
    return {
        "tier": profile.subscription_tier.value,
        "plan_id": profile.plan_id,
        "subscription_window": window.model_dump(mode="json") if window else None,
        "days_until_expiry": days,
        "reminder_level": reminder_level(days).value,
        "quota": quota.to_dict(),
    }


@app.get("/subscription/plans")
@access_check(app, sessions, *APPROVED_AGENTS)
def get_plans() -> Dict[str, Any]:
    """
    Get the free tier and the paid plan catalogue
    """
    return {
        "currency": CURRENCY,
        "free": {
            "name": "Free",
            "price": 0,
            "quota_policy": {"type": FREE_QUOTA_WINDOW, "value": FREE_LISTING_LIMIT},
            "description": FREE_DESCRIPTION,
        },
        "plans": [plan.model_dump(mode="json") for plan in list_plans()],
        "description": PRO_DESCRIPTION,
    }


@app.post("/subscription/upgrade-requests")
@access_check(app, sessions, *APPROVED_AGENTS)
def submit_upgrade_request() -> Dict[str, Any]:
    """
    Submit a payment receipt for a plan
    Expected body: {"plan_id": "monthly-basic", "receipt_reference": "receipts/<user>/<file>"}
    """
    session = current_session(app)
    try:
        body = UpgradeRequestBody(**(app.current_event.json_body or {}))
    except (ValidationError, TypeError, ValueError) as exc:
        logger.info(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    request = workflow.submit_upgrade_request(
        session.user_id, body.plan_id, body.receipt_reference, datetime.now(timezone.utc)
    )
    return {"success": True, "request": request.model_dump(mode="json")}


@app.get("/subscription/upgrade-requests")
@access_check(app, sessions, *APPROVED_AGENTS)
def list_my_upgrade_requests() -> Dict[str, Any]:
    session = current_session(app)
    requests = workflow.list_agent_requests(session.user_id)
    return {"requests": [request.model_dump(mode="json") for request in requests]}


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
