from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def bad_request(code: str, message: str) -> ApiError:
    return ApiError(status_code=400, code=code, message=message)


def forbidden(message: str = "Access denied.", *, code: str = "FORBIDDEN") -> ApiError:
    return ApiError(status_code=403, code=code, message=message)


def not_found(code: str, message: str) -> ApiError:
    return ApiError(status_code=404, code=code, message=message)


def conflict(code: str, message: str) -> ApiError:
    return ApiError(status_code=409, code=code, message=message)


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
