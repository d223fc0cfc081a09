from datetime import datetime, timezone
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.utilities.typing import LambdaContext
from typing import Any, Dict

from portal_core.models.entitlement import Role
from portal_core.services.identity_service import SessionManager
from portal_core.services.quota_service import ListingQuotaService
from portal_core.utils.access_middleware import access_check, current_session, listing_quota_check
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
quota_service = ListingQuotaService(roles=sessions.roles, users=sessions.roles.users)

SIGNED_IN = {Role.AGENT, Role.ADMINISTRATOR}


@app.get("/listings/quota")
@access_check(app, sessions, SIGNED_IN)
def get_listing_quota() -> Dict[str, Any]:
    """
    Usage, remaining allowance and percentage for the caller's quota window
    """
    quota = quota_service.evaluate(current_session(app), datetime.now(timezone.utc))
    return quota.to_dict()


@app.post("/listings/authorize")
@access_check(app, sessions, SIGNED_IN)
@listing_quota_check(app, quota_service)
def authorize_listing() -> Dict[str, Any]:
    """
    Called before a listing is created; 429 when the caller may not create one
    """
    quota = app.context["quota"]
    return {"allowed": True, "quota_info": quota.to_dict()}


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
