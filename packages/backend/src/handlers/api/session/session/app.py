from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import BadRequestError
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict, Optional, Set

from portal_core.models.decision import Redirect
from portal_core.models.entitlement import AccountStatus, Role
from portal_core.services.access_decision import authorize
from portal_core.services.identity_service import SessionManager
from portal_core.utils.access_middleware import access_check, current_session
from portal_core.utils.auth import session_from_event
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

SIGNED_IN = {Role.AGENT, Role.ADMINISTRATOR}


class RouteRequirements(BaseModel):
    """What a single-page-app route admits"""
    allowed_roles: Set[Role] = Field(min_length=1)
    required_statuses: Optional[Set[AccountStatus]] = None


@app.get("/me")
@access_check(app, sessions, SIGNED_IN)
def get_me() -> Dict[str, Any]:
    """
    Role and status of the signed-in user
    """
    session = current_session(app)
    role = sessions.roles.resolve_role(session.user_id, session)
    status = sessions.statuses.resolve_status(session.user_id, session)
    return {
        "user_id": session.user_id,
        "email": session.email,
        "session_id": session.session_id,
        "role": role.value,
        "status": status.value if status else None,
    }


@app.post("/access/decide")
def decide_access() -> Dict[str, Any]:
    """
    Route guard for the web app
    Expected body: {"allowed_roles": ["agent"], "required_statuses": ["approved"]}
    """
    try:
        requirements = RouteRequirements(**(app.current_event.json_body or {}))
    except (ValidationError, TypeError, ValueError) as exc:
        logger.info(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    decision = authorize(
        session_from_event(app.current_event.raw_event),
        requirements.allowed_roles,
        requirements.required_statuses,
        sessions.roles,
        sessions.statuses,
    )
    if isinstance(decision, Redirect):
        return {"allowed": False, "redirect": decision.target.value}
    return {"allowed": True, "redirect": None}


@app.post("/sign-out")
def sign_out() -> Dict[str, Any]:
    session = session_from_event(app.current_event.raw_event)
    if session is not None:
        sessions.sign_out(session)
    return {"success": True}


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
