"""
Booking error taxonomy.

Every error carries a stable ``code`` and the HTTP status the API layer maps it to.
"""

from typing import Optional


class BookingError(Exception):
    """Base class for all booking engine errors"""

    status_code = 400
    code = "booking_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class NotFoundError(BookingError):
    status_code = 404
    code = "not_found"


class ForbiddenError(BookingError):
    status_code = 403
    code = "forbidden"


class ValidationError(BookingError):
    status_code = 422
    code = "validation_error"


class ConflictError(BookingError):
    status_code = 409
    code = "conflict"


class SlotFull(ConflictError):
    """Capacity exhausted; choose another slot"""

    code = "slot_full"


class SlotLocked(BookingError):
    """Transient contention on the slot row; safe to retry shortly"""

    status_code = 423
    code = "slot_locked"
    retry_after_seconds = 2


class InvalidStateTransition(ConflictError):
    code = "invalid_state_transition"

    def __init__(self, current: str, requested: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot transition appointment from '{current}' to '{requested}'",
            current_status=current,
            requested_status=requested,
        )
        self.current = current
        self.requested = requested


class PaymentNotConfigured(BookingError):
    status_code = 503
    code = "payment_not_configured"


class PaymentProviderError(BookingError):
    status_code = 502
    code = "payment_provider_error"


class ReschedulePartialFailure(ConflictError):
    """New slot could not be reserved; the original appointment was restored"""

    code = "reschedule_failed"

    def __init__(self, cause: BookingError, appointment_id: int, restored_status: str):
        super().__init__(
            f"Could not reserve the new slot ({cause.code}); original appointment kept",
            cause=cause.code,
            appointment_id=appointment_id,
            restored_status=restored_status,
        )
        self.cause = cause
        self.restored_status = restored_status
