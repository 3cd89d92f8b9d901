from typing import Any, Optional


class DomainError(Exception):
    """Base for business-rule failures. `reason` is stable and machine-checkable."""

    reason = "domain_error"

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data: dict[str, Any] = data or {}


class ValidationError(DomainError):
    reason = "validation_error"


class NotFoundError(DomainError):
    reason = "not_found"


class CapacityExceededError(DomainError):
    reason = "capacity_exceeded"


class DuplicateRegistrationError(DomainError):
    reason = "duplicate_registration"


class ExpiredReservationError(DomainError):
    reason = "reservation_expired"


class InvalidReservationStateError(DomainError):
    reason = "invalid_state"


class SignatureVerificationError(DomainError):
    reason = "invalid_signature"


class GatewayError(DomainError):
    reason = "gateway_error"
