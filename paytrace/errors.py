"""Error taxonomy shared by the payment services."""

from __future__ import annotations

import enum
from typing import Any, Optional


class ErrorType(str, enum.Enum):
    API_VALIDATION = "urn:doneplatform:doneb:error:api-validation"
    SYSTEM_VALIDATION = "urn:doneplatform:doneb:error:system-validation"
    TECHNICAL = "urn:doneplatform:doneb:error:technical"
    AUTHENTICATION = "urn:doneplatform:doneb:error:authentication"


class ErrorCode(str, enum.Enum):
    MISSING_BODY = "DONEB-01001"
    INVALID_PAYLOAD = "DONEB-01002"
    MISSING_CORRELATION_ID = "DONEB-01003"
    UNAUTHORIZED = "DONEB-02001"
    SERVICE_UNAVAILABLE = "DONEB-03001"
    INTERNAL_ERROR = "DONEB-05000"


_TITLES = {
    ErrorType.API_VALIDATION: "Request validation failed",
    ErrorType.SYSTEM_VALIDATION: "System validation failed",
    ErrorType.TECHNICAL: "Technical error",
    ErrorType.AUTHENTICATION: "Authentication failed",
}


class AppError(Exception):
    """Application error carrying an HTTP status and a structured code."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[ErrorCode] = None,
        is_operational: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.is_operational = is_operational

    @property
    def error_type(self) -> ErrorType:
        if self.status_code in (401, 403):
            return ErrorType.AUTHENTICATION
        if 400 <= self.status_code < 500:
            return ErrorType.API_VALIDATION
        return ErrorType.TECHNICAL


class SerializationError(TypeError):
    """Log metadata could not be represented as JSON."""


def problem_details(error: BaseException, instance: str) -> dict[str, Any]:
    """Standard error body returned by every service."""

    if isinstance(error, AppError):
        status = error.status_code
        error_type = error.error_type
        code = (error.error_code or ErrorCode.INTERNAL_ERROR).value
        message = error.message
    else:
        status = 500
        error_type = ErrorType.TECHNICAL
        code = ErrorCode.INTERNAL_ERROR.value
        message = "Internal server error"

    return {
        "type": error_type.value,
        "title": _TITLES[error_type],
        "status": status,
        "details": [{"code": code, "message": message}],
        "instance": instance,
    }
