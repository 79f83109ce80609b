"""Application error taxonomy.

Every error carries an HTTP status and a stable ``error_code`` so clients can
branch on the code instead of matching message strings.
"""

from typing import Any


class AppError(Exception):
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    error_code = "CONFLICT"


class ValidationError(AppError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class UnauthorizedError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class ForbiddenError(UnauthorizedError):
    status_code = 403
    error_code = "FORBIDDEN"


class ExternalServiceError(AppError):
    status_code = 502
    error_code = "EXTERNAL_SERVICE_ERROR"


class ProviderRequestError(ExternalServiceError):
    """The provider answered and refused the request, e.g. a declined card."""
