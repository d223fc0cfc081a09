from datetime import datetime, timezone
from typing import Dict, Any
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext

from portal_core.services.aws import TransactionConflict, transact_write
from portal_core.services.user_service import UserService

# Initialize the logger
logger = Logger()

user_service = UserService()


def extract_user_info(event: Dict[str, Any]) -> Dict[str, str]:
    """Extract user information from Cognito post-confirmation event."""
    try:
        user_id = event["request"]["userAttributes"]["sub"]
        email = event["request"]["userAttributes"]["email"]
    except KeyError as e:
        logger.error(f"Missing required user attribute: {e}")
        raise ValueError(f"Invalid Cognito event structure: missing {e}")

    logger.info(f"Processing post-confirmation for user: {user_id}, email: {email}")
    return {"user_id": user_id, "email": email}


def register_pending_agent(user_info: Dict[str, str], now: datetime) -> bool:
    """
    Create the agent role grant and the pending profile in one transaction.

    Returns:
        bool: False when the user was already registered (Cognito retried the trigger)
    """
    user_id = user_info["user_id"]
    try:
        transact_write(user_service.registration_items(user_id, user_info["email"], now))
    except TransactionConflict:
        logger.info(f"User {user_id} already registered, skipping initialization")
        return False
    logger.info(f"Registered pending agent {user_id}")
    return True


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Cognito Post-Confirmation Lambda handler.

    Registers every newly confirmed identity as an agent awaiting
    administrator approval, on the free tier.

    Input: Cognito Post-Confirmation trigger event
    Output: Same event (required by Cognito)
    """
    logger.info("Post-confirmation Lambda triggered", extra={
        "event_source": event.get("triggerSource", "unknown"),
        "user_pool_id": event.get("userPoolId", "unknown")
    })

    # Forgotten-password confirmations reuse this trigger
    if event.get("triggerSource") == "PostConfirmation_ConfirmForgotPassword":
        return event

    user_info = extract_user_info(event)

    # A PersistenceFailure propagates: Cognito then fails the confirmation,
    # so no identity exists without its role and profile
    register_pending_agent(user_info, datetime.now(timezone.utc))
    return event
