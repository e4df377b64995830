"""Typed failures returned by the reservation engine.

Each failure carries a stable ``code`` and the HTTP status the API layer maps it to.
"""

from typing import Any, Dict, Optional


class ReservationError(Exception):
    code = 'RESERVATION_ERROR'
    http_status = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class InvalidRequest(ReservationError):
    code = 'INVALID_REQUEST'
    http_status = 400


class InvalidSeats(InvalidRequest):
    """Malformed, duplicate or foreign seat labels."""
    code = 'INVALID_SEATS'


class ShowNotFound(ReservationError):
    code = 'SHOW_NOT_FOUND'
    http_status = 404


class ShowAlreadyExists(ReservationError):
    code = 'SHOW_ALREADY_EXISTS'
    http_status = 409


class SeatUnavailable(ReservationError):
    """Lost the race for one or more seats; retry with other seats."""
    code = 'SEAT_UNAVAILABLE'
    http_status = 409

    def __init__(self, unavailable_seats, message: str = 'seats unavailable'):
        self.unavailable_seats = sorted(unavailable_seats)
        super().__init__(message, details={"unavailable_seats": self.unavailable_seats})


class HoldNotFound(ReservationError):
    code = 'HOLD_NOT_FOUND'
    http_status = 404


class HoldExpired(ReservationError):
    code = 'HOLD_EXPIRED'
    http_status = 410


class AlreadyFinal(ReservationError):
    """The hold or booking already reached a terminal state."""
    code = 'ALREADY_FINAL'
    http_status = 409


class InvalidState(ReservationError):
    code = 'INVALID_STATE'
    http_status = 409


class PaymentError(ReservationError):
    code = 'PAYMENT_ERROR'
    http_status = 502


class PaymentDeclined(PaymentError):
    code = 'PAYMENT_DECLINED'
    http_status = 402


class PaymentTimeout(PaymentError):
    code = 'PAYMENT_TIMEOUT'
    http_status = 504


class RefundFailed(PaymentError):
    code = 'REFUND_FAILED'
    http_status = 502
