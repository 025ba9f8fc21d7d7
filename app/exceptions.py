"""
Domain errors raised by the assessment services

The HTTP layer maps each class to a status code in app.main.
"""
from typing import Any, Optional


class AssessmentError(Exception):
    """Base class for all expected service errors"""

    status_code = 500
    error_code = "assessment_error"

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(AssessmentError):
    """Malformed quiz/question structure or out-of-range values"""

    status_code = 400
    error_code = "validation_error"


class PermissionDeniedError(AssessmentError):
    status_code = 403
    error_code = "permission_denied"


class NotFoundError(AssessmentError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AssessmentError):
    """Operation conflicts with the current state of a quiz, attempt or result"""

    status_code = 409
    error_code = "conflict"


class ExpiredError(AssessmentError):
    """Operation against an attempt (or quiz window) that has already closed"""

    status_code = 410
    error_code = "expired"


class StoreTimeoutError(AssessmentError):
    status_code = 503
    error_code = "store_timeout"
