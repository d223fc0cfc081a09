"""
Access Middleware for the listing portal API

Route decorators that run the access decision engine and the listing
quota check before the route body executes.
"""

import json
from datetime import datetime, timezone
from functools import wraps
from typing import AbstractSet, Any, Callable, Dict, Optional
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver, Response, content_types

from portal_core.models.decision import Deny, Redirect, RedirectTarget
from portal_core.models.entitlement import AccountStatus, Role, Session
from portal_core.services.access_decision import authorize
from portal_core.services.identity_service import SessionManager
from portal_core.services.quota_service import ListingQuotaService
from portal_core.utils.auth import session_from_event

logger = Logger()

UPGRADE_URL = RedirectTarget.AGENT_HOME.value


def json_response(status_code: int, body: Dict[str, Any]) -> Response:
    return Response(
        status_code=status_code,
        content_type=content_types.APPLICATION_JSON,
        body=json.dumps(body, default=str),
    )


def redirect_response(decision: Redirect) -> Response:
    """401 when the caller must sign in, 403 with the page they belong on otherwise."""
    if decision.target == RedirectTarget.SIGN_IN:
        return json_response(401, {"error": "Authentication required", "redirect": decision.target.value})
    return json_response(403, {"error": "Forbidden", "redirect": decision.target.value})


def current_session(app: APIGatewayRestResolver) -> Optional[Session]:
    """Session stored by access_check, or read from the request claims."""
    session = app.context.get("session")
    if session is None:
        session = session_from_event(app.current_event.raw_event)
    return session


def access_check(
    app: APIGatewayRestResolver,
    sessions: SessionManager,
    allowed_roles: AbstractSet[Role],
    required_statuses: Optional[AbstractSet[AccountStatus]] = None,
):
    """
    Decorator admitting a route only to the given roles and statuses.

    On Allow the caller's Session is available as ``app.context["session"]``;
    otherwise the route is not run and a redirect response is returned.

    Usage:
        @app.get("/admin/signups")
        @access_check(app, sessions, {Role.ADMINISTRATOR})
        def list_signups():
            ...
    """
    def decorator(route_func: Callable) -> Callable:
        @wraps(route_func)
        def wrapper(*args, **kwargs):
            session = session_from_event(app.current_event.raw_event)
            decision = authorize(
                session, allowed_roles, required_statuses, sessions.roles, sessions.statuses
            )
            if isinstance(decision, Redirect):
                logger.info(
                    f"Access redirected to {decision.target.value}",
                    extra={"path": app.current_event.path},
                )
                return redirect_response(decision)
            app.append_context(session=session)
            return route_func(*args, **kwargs)

        return wrapper
    return decorator


def listing_quota_check(app: APIGatewayRestResolver, quota_service: ListingQuotaService):
    """
    Decorator refusing the route with 429 when the caller may not create a listing.

    Must be applied under access_check so that a session is present. The
    quota snapshot is available as ``app.context["quota"]``.
    """
    def decorator(route_func: Callable) -> Callable:
        @wraps(route_func)
        def wrapper(*args, **kwargs):
            session = current_session(app)
            if session is None:
                return redirect_response(Redirect(RedirectTarget.SIGN_IN))

            quota = quota_service.evaluate(session, datetime.now(timezone.utc))
            if isinstance(quota.decision, Deny):
                return json_response(
                    429,
                    {
                        "error": "Listing not allowed",
                        "reason": quota.decision.reason.value,
                        "message": quota.decision.message,
                        "quota_info": quota.to_dict(),
                        "upgrade_url": UPGRADE_URL,
                    },
                )
            app.append_context(quota=quota)
            return route_func(*args, **kwargs)

        return wrapper
    return decorator
