"""
Application error taxonomy.

Every error raised from a service carries a stable ``code`` and the HTTP
status the API answers with; ``main`` turns them into ``{"error", "code"}``
JSON bodies.
"""
from typing import Any, Dict, Optional


class ApplicationError(Exception):
    """Base class for errors that map to an HTTP response"""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class Unauthorized(ApplicationError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ApplicationError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(ApplicationError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(ApplicationError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(ApplicationError):
    status_code = 409
    code = "CONFLICT"


class UsageLimitExceeded(ApplicationError):
    """Raised when a free-tier user hits a plan limit (HTTP 402)"""

    status_code = 402
    code = "USAGE_LIMIT_EXCEEDED"

    def __init__(self, message: str, feature: str, usage: Dict[str, Any]):
        code = "STORAGE_LIMIT_EXCEEDED" if feature == "storage" else "USAGE_LIMIT_EXCEEDED"
        super().__init__(message, code=code, details={"feature": feature, "usage": usage})


class DatabaseError(ApplicationError):
    status_code = 500
    code = "DATABASE_ERROR"


class ExternalApiError(ApplicationError):
    status_code = 502
    code = "EXTERNAL_API_ERROR"


class InternalError(ApplicationError):
    status_code = 500
    code = "INTERNAL_ERROR"


__all__ = [
    "ApplicationError",
    "Unauthorized",
    "Forbidden",
    "ValidationError",
    "NotFound",
    "Conflict",
    "UsageLimitExceeded",
    "DatabaseError",
    "ExternalApiError",
    "InternalError",
]
