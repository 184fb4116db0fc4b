from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class LeaveError(Exception):
    """Business rule failure raised by the leave services before anything is written.

    The message is user facing and is returned verbatim by the HTTP layer.
    """

    status_code = 400
    code = "LEAVE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LeaveValidationError(LeaveError):
    status_code = 422
    code = "VALIDATION_ERROR"


class LeaveAuthorizationError(LeaveError):
    status_code = 403
    code = "FORBIDDEN"


class LeaveConflictError(LeaveError):
    status_code = 409
    code = "CONFLICT"


class LeaveNotFoundError(LeaveError):
    status_code = 404
    code = "NOT_FOUND"


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
