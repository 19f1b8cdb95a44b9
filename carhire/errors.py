# Domain error taxonomy for the reservation engine.
# Services raise these; main.py renders them into HTTP responses with a stable JSON shape.
from __future__ import annotations

from datetime import date
from typing import Any, Optional


class ReservationError(Exception):
    """Base class for every error the engine surfaces to its caller.

    Attributes:
    - status_code: HTTP status used by the API layer
    - code: short machine-readable identifier
    - retryable: True when the same request may succeed if simply retried
    """

    status_code: int = 400
    code: str = "reservation_error"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.retryable:
            detail["retryable"] = True
        return detail


class ValidationError(ReservationError):
    """Bad input; the caller must fix the named field before retrying."""

    status_code = 400
    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["field"] = self.field
        return detail


class NotFoundError(ReservationError):
    status_code = 404
    code = "not_found"


class ConflictError(ReservationError):
    """The requested window overlaps a blocking reservation.

    `blocked_until` is the return date of the blocking window, so callers can
    propose dates after it.
    """

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, blocked_until: Optional[date] = None) -> None:
        super().__init__(message)
        self.blocked_until = blocked_until

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["blocked_until"] = self.blocked_until.isoformat() if self.blocked_until else None
        return detail


class AuthorizationError(ReservationError):
    """Caller is authenticated but acts outside its tenant."""

    status_code = 403
    code = "forbidden"


class ExternalProviderError(ReservationError):
    """The payment provider failed after the reservation was made durable.

    Callers poll or retry intent creation for `booking_id`; they never recreate
    the reservation.
    """

    status_code = 502
    code = "payment_provider_error"
    retryable = True

    def __init__(self, message: str, booking_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.booking_id = booking_id

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["booking_id"] = self.booking_id
        return detail


class SignatureError(ReservationError):
    """A payment confirmation failed signature verification; nothing was changed."""

    status_code = 400
    code = "invalid_signature"


class TransactionAbortedError(ReservationError):
    """The store aborted the transaction (lock wait or statement timeout)."""

    status_code = 503
    code = "transaction_aborted"
    retryable = True


class BusyError(ReservationError):
    """Another request currently holds the per-car lock."""

    status_code = 429
    code = "busy"
    retryable = True

    def __init__(self, message: str, retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["retry_after"] = self.retry_after
        return detail
