"""
Application error taxonomy.

Services raise these; routers re-raise them and the exception handler in
main.py renders them as the standard JSON envelope.
"""
from typing import Any, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP status and a client-safe message."""

    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, details: Any = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class InvalidPlanError(ValidationError):
    default_message = "Invalid plan"


class AuthenticationError(AppError):
    status_code = 401
    default_message = "User authentication required"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class UpstreamError(AppError):
    """A call to Stripe (or another vendor) failed."""

    status_code = 502
    default_message = "Upstream service error"


class PersistenceError(AppError):
    status_code = 500
    default_message = "Database error"
