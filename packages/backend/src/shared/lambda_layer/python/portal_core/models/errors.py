"""Error taxonomy shared by the resolvers, the ledger and the approval workflow."""

from typing import Optional


class EntitlementError(Exception):
    """Base class for every error raised by portal_core"""

    pass


class IdentityNotFound(EntitlementError):
    """No role or profile record exists for the user"""

    def __init__(self, user_id: str, message: Optional[str] = None):
        self.user_id = user_id
        super().__init__(message or f"No identity record found for user {user_id}")


class InvalidStateTransition(EntitlementError):
    """A review was attempted on a record that already left its pending state"""

    def __init__(self, entity: str, entity_id: str, current_state: Optional[str], attempted: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity} {entity_id}: current state is {current_state or 'unknown'}"
        )


class PersistenceFailure(EntitlementError):
    """An underlying store operation failed"""

    pass


class UpgradeRequestNotFound(EntitlementError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Upgrade request {request_id} not found")


class UnknownPlan(EntitlementError, ValueError):
    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Unknown subscription plan: {plan_id}")


class InvalidDuration(EntitlementError, ValueError):
    """Custom duration label submitted without an explicit end date"""

    def __init__(self, duration_label: str):
        self.duration_label = duration_label
        super().__init__(
            f"Duration '{duration_label}' needs an explicit end date"
        )
