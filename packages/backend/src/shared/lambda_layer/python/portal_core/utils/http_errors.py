"""Translation of entitlement errors into API Gateway responses."""

from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver, Response
from pydantic import ValidationError

from portal_core.models.errors import (
    IdentityNotFound,
    InvalidDuration,
    InvalidStateTransition,
    PersistenceFailure,
    UnknownPlan,
    UpgradeRequestNotFound,
)
from portal_core.utils.access_middleware import json_response

logger = Logger()


def register_error_handlers(app: APIGatewayRestResolver) -> None:
    """Map the error taxonomy to HTTP status codes on `app`."""

    @app.exception_handler(IdentityNotFound)
    def handle_identity_not_found(exc: IdentityNotFound) -> Response:
        logger.info(f"Identity not found: {exc}")
        return json_response(404, {"error": "Not found", "message": str(exc)})

    @app.exception_handler(UpgradeRequestNotFound)
    def handle_request_not_found(exc: UpgradeRequestNotFound) -> Response:
        return json_response(404, {"error": "Not found", "message": str(exc)})

    @app.exception_handler(InvalidStateTransition)
    def handle_invalid_transition(exc: InvalidStateTransition) -> Response:
        # Lost review race or repeated click; nothing was changed
        logger.info(f"Invalid state transition: {exc}")
        return json_response(
            409,
            {
                "error": "Invalid state transition",
                "message": str(exc),
                "current_state": exc.current_state,
            },
        )

    @app.exception_handler(UnknownPlan)
    @app.exception_handler(InvalidDuration)
    def handle_bad_subscription_input(exc: ValueError) -> Response:
        return json_response(400, {"error": "Invalid request", "message": str(exc)})

    @app.exception_handler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Response:
        logger.info(f"Validation error: {exc}")
        return json_response(400, {"error": "Invalid request", "message": str(exc)})

    @app.exception_handler(PersistenceFailure)
    def handle_persistence_failure(exc: PersistenceFailure) -> Response:
        logger.error(f"Persistence failure: {exc}")
        return json_response(500, {"error": "Internal server error"})
