from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(status_code=422, code=code, message=message, details=details)


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(status_code=404, code=code, message=message)


class ConflictError(ApiError):
    def __init__(self, message: str, *, code: str = "CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(status_code=409, code=code, message=message, details=details)


class ForbiddenError(ApiError):
    def __init__(self, message: str = "Insufficient permissions.", *, code: str = "FORBIDDEN"):
        super().__init__(status_code=403, code=code, message=message)


class InsufficientBalanceError(ConflictError):
    def __init__(self, *, leave_type: str, requested: float, available: float):
        super().__init__(
            f"Insufficient {leave_type} leave balance. Available: {available:g}, requested: {requested:g}.",
            code="INSUFFICIENT_BALANCE",
            details={"leave_type": leave_type, "requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})
