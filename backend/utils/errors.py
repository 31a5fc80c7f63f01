"""Domain errors raised by services and rendered by the server exception handler."""
from typing import Optional


class CRMError(Exception):
    """Base class for domain errors with a stable error code."""
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)


class ValidationError(CRMError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(CRMError):
    status_code = 401
    error_code = "NOT_AUTHENTICATED"


class AuthorizationError(CRMError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(CRMError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(CRMError):
    status_code = 409
    error_code = "CONFLICT"


class InternalError(CRMError):
    status_code = 500
    error_code = "INTERNAL_ERROR"


class RateLimitError(CRMError):
    status_code = 429
    error_code = "RATE_LIMITED"
