"""
Access Decision Engine

`decide` is the route guard: a total, side-effect-free function of the
caller's role and status and of what the route requires. `authorize`
resolves those inputs for a session and hands them to `decide`.
"""

from typing import AbstractSet, Optional
from aws_lambda_powertools import Logger

from portal_core.models.decision import AccessDecision, Allow, Redirect, RedirectTarget
from portal_core.models.entitlement import AccountStatus, Role, Session
from portal_core.models.errors import IdentityNotFound
from portal_core.services.identity_service import AccountStatusResolver, RoleResolver

logger = Logger()


def _home_for(role: Optional[Role], status: Optional[AccountStatus]) -> RedirectTarget:
    if role == Role.ADMINISTRATOR:
        return RedirectTarget.ADMIN_HOME
    if role == Role.AGENT and status == AccountStatus.APPROVED:
        return RedirectTarget.AGENT_HOME
    if role == Role.AGENT:
        return RedirectTarget.PENDING_APPROVAL
    return RedirectTarget.SIGN_IN


def decide(
    role: Optional[Role],
    status: Optional[AccountStatus],
    allowed_roles: AbstractSet[Role],
    required_statuses: Optional[AbstractSet[AccountStatus]] = None,
) -> AccessDecision:
    """
    Decide whether a caller may reach a route.

    Args:
        role: Caller's role, None when there is no session
        status: Caller's account status, None for administrators
        allowed_roles: Roles the route admits
        required_statuses: Statuses the route additionally requires, None for any

    Returns:
        Allow, or Redirect to the page the caller belongs on
    """
    if role is None:
        return Redirect(RedirectTarget.SIGN_IN)
    if role not in allowed_roles:
        return Redirect(_home_for(role, status))
    if required_statuses is not None and status not in required_statuses:
        # An agent with no status lands on sign-in, not on the pending page
        if role == Role.AGENT and status is None:
            return Redirect(RedirectTarget.SIGN_IN)
        return Redirect(_home_for(role, status))
    return Allow()


def authorize(
    session: Optional[Session],
    allowed_roles: AbstractSet[Role],
    required_statuses: Optional[AbstractSet[AccountStatus]],
    roles: RoleResolver,
    statuses: AccountStatusResolver,
) -> AccessDecision:
    """
    Resolve the session's role and status and decide access.

    An unknown identity is treated as no session at all.

    Raises:
        PersistenceFailure: a resolver could not read its store
    """
    if session is None:
        return decide(None, None, allowed_roles, required_statuses)
    try:
        role = roles.resolve_role(session.user_id, session)
        status = statuses.resolve_status(session.user_id, session)
    except IdentityNotFound as e:
        logger.info(f"Unknown identity treated as signed out: {e}")
        return decide(None, None, allowed_roles, required_statuses)

    decision = decide(role, status, allowed_roles, required_statuses)
    if isinstance(decision, Redirect):
        logger.debug(
            f"Redirecting user {session.user_id} to {decision.target.value}",
            extra={"role": role.value, "status": status.value if status else None},
        )
    return decision
