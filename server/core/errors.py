"""
Application error taxonomy.

Routers and domain functions raise these; ``main.create_app`` registers the
handler that renders them as ``{"error": code, "detail": message}``.
"""
from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal"

    def __init__(self, message: str, *, code: Optional[str] = None, extra: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.extra}


class UnauthorizedError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class UpstreamError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "upstream_error"


class ServiceUnavailable(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "service_unavailable"


class AttemptDenied(ForbiddenError):
    """Exam attempt refused; ``code`` names the failed precondition."""

    def __init__(self, code: str, message: str, *, required_program_id: Optional[str] = None):
        extra = {"reason": code}
        if required_program_id:
            extra["required_program_id"] = required_program_id
        super().__init__(message, code=code, extra=extra)
        self.required_program_id = required_program_id


class AttemptClosedError(ConflictError):
    code = "attempt_completed"
