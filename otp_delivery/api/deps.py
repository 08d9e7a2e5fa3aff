from fastapi import HTTPException, Request, status

from otp_delivery.core.exceptions import (
    DeliveryException,
    DeliveryNotFoundError,
    InvalidTransitionError,
    NoChannelAvailableError,
    RetryNotPermittedError,
    ValidationException,
)
from otp_delivery.models.api import ErrorResponse
from otp_delivery.services.sessions import DeliverySessionManager

STATUS_CODES = {
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    RetryNotPermittedError: status.HTTP_409_CONFLICT,
    NoChannelAvailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    DeliveryNotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationException: status.HTTP_400_BAD_REQUEST,
}


def get_session_manager(request: Request) -> DeliverySessionManager:
    """Dependency returning the session manager owned by the application."""
    return request.app.state.sessions


def to_http_exception(error: DeliveryException) -> HTTPException:
    """Map a delivery error to an HTTP error carrying its code and reason."""
    status_code = STATUS_CODES.get(type(error), status.HTTP_400_BAD_REQUEST)
    reason = getattr(error, "reason", None)
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(
            message=str(error),
            code=error.code,
            reason=reason.value if reason is not None else None,
        ).model_dump(),
    )
