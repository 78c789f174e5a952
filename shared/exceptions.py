"""
shared/exceptions.py
Domain errors raised by the request lifecycle core.
Each carries the HTTP status the API translates it to (see main.py).
"""


class CoordinationError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CoordinationError):
    """Missing or malformed input. No state change."""
    status_code = 422


class NotFoundError(CoordinationError):
    """Referenced donor or request does not resolve. No state change."""
    status_code = 404


class PermissionDeniedError(CoordinationError):
    status_code = 403


class InvalidStateError(CoordinationError):
    """Requested transition is not an edge of the request state machine."""
    status_code = 409

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class IntegrityFault(CoordinationError):
    """Schema or data drift, e.g. a blood group with no inventory row."""
    status_code = 500


class DeliveryError(CoordinationError):
    """Push or SMS dispatch failure. Never leaves the notification dispatcher."""
    status_code = 502
