from fastapi import HTTPException, status

from ..domain.errors import (
    CapacityExceededError,
    DomainError,
    DuplicateRegistrationError,
    ExpiredReservationError,
    GatewayError,
    InvalidReservationStateError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)

_STATUS_BY_ERROR: dict[type[DomainError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    SignatureVerificationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    CapacityExceededError: status.HTTP_409_CONFLICT,
    DuplicateRegistrationError: status.HTTP_409_CONFLICT,
    InvalidReservationStateError: status.HTTP_409_CONFLICT,
    ExpiredReservationError: status.HTTP_410_GONE,
    GatewayError: status.HTTP_502_BAD_GATEWAY,
}


def to_http(exc: DomainError) -> HTTPException:
    """Stable `reason` for clients, human `message`, plus whatever numbers the error carries."""
    code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(
        status_code=code,
        detail={"reason": exc.reason, "message": exc.message, **exc.data},
    )
