"""
Authentication utilities for building a Session from API Gateway events.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from aws_lambda_powertools import Logger

from portal_core.models.entitlement import Session

logger = Logger()


def get_all_user_claims(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract the Cognito claims API Gateway attached to the request.

    Args:
        event: API Gateway event dictionary

    Returns:
        Dictionary of JWT claims, empty when the request is anonymous
    """
    request_context = event.get("requestContext") or {}
    authorizer = request_context.get("authorizer") or {}
    return authorizer.get("claims") or {}


def _claim_time(claims: Dict[str, Any], *names: str) -> Optional[datetime]:
    for name in names:
        value = claims.get(name)
        if value is None:
            continue
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non numeric {name} claim: {value}")
    return None


def session_from_event(event: Dict[str, Any]) -> Optional[Session]:
    """
    Build the caller's Session from the Cognito JWT claims.

    The session id is the token's origin_jti, which stays the same across
    token refreshes of one sign-in. Tokens without it fall back to the jti
    and then to the subject plus the authentication time.

    Args:
        event: API Gateway event dictionary

    Returns:
        Session, or None when there is no authenticated user
    """
    claims = get_all_user_claims(event)
    user_id = claims.get("sub")
    if not user_id:
        logger.debug("No user_id found in JWT claims")
        return None

    session_id = claims.get("origin_jti") or claims.get("jti") or f"{user_id}:{claims.get('auth_time', '0')}"
    return Session(
        session_id=session_id,
        user_id=user_id,
        email=claims.get("email"),
        issued_at=_claim_time(claims, "auth_time", "iat") or datetime.now(timezone.utc),
        expires_at=_claim_time(claims, "exp"),
    )
