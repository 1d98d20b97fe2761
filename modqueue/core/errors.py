from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ModerationError(Exception):
    status_code = 400
    code = "moderation_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.code.replace("_", " ").capitalize()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ModerationError):
    status_code = 400
    code = "validation_error"


class UnauthorizedError(ModerationError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(ModerationError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ModerationError):
    status_code = 404
    code = "not_found"


class InvalidStateError(ModerationError):
    """Raised when a record is not in the state an operation requires."""
    status_code = 409
    code = "invalid_state"


class ExternalServiceError(ModerationError):
    status_code = 502
    code = "external_service_error"


class JobTimeoutError(ModerationError):
    status_code = 504
    code = "job_timeout"


async def moderation_error_handler(request: Request, exc: ModerationError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
