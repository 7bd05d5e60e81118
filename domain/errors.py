# domain/errors.py
from typing import Optional


class CoordinatorError(Exception):
    """Base class for errors surfaced to webhook and admin callers"""

    http_status = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(CoordinatorError):
    http_status = 401
    code = "authentication_failed"


class ValidationError(CoordinatorError):
    http_status = 400
    code = "validation_failed"


class PayloadTooLargeError(ValidationError):
    http_status = 413
    code = "payload_too_large"


class RateLimitedError(CoordinatorError):
    http_status = 429
    code = "rate_limited"

    def __init__(self, message: str, scope: str, retry_after: float):
        super().__init__(message)
        self.scope = scope
        self.retry_after = retry_after


class ConflictError(CoordinatorError):
    http_status = 409
    code = "conflict"


class InvalidStateError(ConflictError):
    code = "invalid_state"


class NotFoundError(CoordinatorError):
    http_status = 404
    code = "not_found"


class CapacityError(CoordinatorError):
    http_status = 503
    code = "capacity_exceeded"


class UpstreamError(CoordinatorError):
    """An issue tracker or execution delegate call failed"""

    http_status = 502
    code = "upstream_failed"

    def __init__(self, message: str, transient: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class SessionIntegrityError(RuntimeError):
    """The session dual index resolved one key to two different sessions"""
