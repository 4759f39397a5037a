"""
Error taxonomy for the booking engine.

Every engine operation either returns its result or raises one of these.
The HTTP layer (routes.py) decides how each one is presented.
"""
from typing import Optional


class BookingError(Exception):
    """Base class for all engine errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """Malformed input. Raised before the store is touched."""

    status_code = 400


class InvalidTransitionError(ValidationError):
    """The requested lifecycle transition is not legal from the current state."""

    status_code = 409


class ConflictError(BookingError):
    """The vehicle is (or just became) unavailable for the requested interval."""

    status_code = 409

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind


class PaymentError(BookingError):
    """Gateway failure or timeout. Never retried by the engine."""

    status_code = 402


class NotFoundError(BookingError):
    status_code = 404


class ConfigurationError(BookingError):
    """Required fee configuration is missing or malformed."""

    status_code = 500


class PermissionDeniedError(BookingError):
    status_code = 403
