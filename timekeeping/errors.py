from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(
        self,
        status_code: int | None = None,
        code: str | None = None,
        message: str = "Unexpected server error.",
        details: Any = None,
    ):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message
        self.details = details


class ValidationError(ApiError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message=message, details=details)


class UnauthorizedError(ApiError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message=message)


class ForbiddenError(ApiError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message=message)


class NotFoundError(ApiError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message=message)


class ConflictError(ApiError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str):
        super().__init__(message=message)


class RateLimitedError(ApiError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests"):
        super().__init__(message=message)


class InternalError(ApiError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Unexpected server error."):
        super().__init__(message=message)


STATUS_CODE_TO_ERROR_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


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
    details: Any = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "requestId": get_request_id(request),
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})
