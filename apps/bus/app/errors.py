from __future__ import annotations

from typing import Any, Optional, Sequence

from fastapi import HTTPException


class BookingError(HTTPException):
    """
    Base for every error the bus service reports on purpose.

    The message is user facing and survives prod scrubbing; `errors`
    carries field-level details and `extra` is merged into the error body.
    """

    status_code = 400
    default_message = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[Sequence[Any]] = None,
        extra: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(status_code=type(self).status_code, detail=message or self.default_message, headers=headers)
        self.message = self.detail
        self.errors = list(errors) if errors else None
        self.extra = dict(extra or {})


class ValidationError(BookingError):
    default_message = "Validation failed"


class InvalidSeat(ValidationError):
    def __init__(self, seats: Sequence[str]):
        self.invalid_seats = list(seats)
        super().__init__(
            f"Invalid seat(s) for this bus: {', '.join(self.invalid_seats)}",
            errors=[{"field": "seats", "message": f"unknown seat {s}"} for s in self.invalid_seats],
        )


class NotFound(BookingError):
    status_code = 404
    default_message = "Not found"


class SeatConflict(BookingError):
    def __init__(self, seats: Sequence[str]):
        self.conflicting_seats = list(seats)
        super().__init__(
            f"Seats {', '.join(self.conflicting_seats)} are already booked",
            extra={"conflictingSeats": self.conflicting_seats},
        )


class CancellationWindowClosed(BookingError):
    default_message = "Cannot cancel booking within 2 hours of departure"


class PaymentVerificationFailed(BookingError):
    default_message = "Payment verification failed"


class Unauthorized(BookingError):
    status_code = 401
    default_message = "Not authorized"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(BookingError):
    status_code = 403
    default_message = "Access denied - admin role required"


class UpstreamGatewayError(BookingError):
    status_code = 502
    default_message = "Failed to initiate online payment. Please try cash payment."


class DuplicateKeyError(Exception):
    """Raised by storage backends when a uniqueness constraint is hit."""

    def __init__(self, field: str, value: Any = None):
        super().__init__(f"duplicate {field}")
        self.field = field
        self.value = value
