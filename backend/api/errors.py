"""
Error taxonomy for the HTTP surface.

Every error body has the shape {"error": str, "code": str, "details"?: Any}.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

BAD_REQUEST = "BAD_REQUEST"
VALIDATION_ERROR = "VALIDATION_ERROR"
UNAUTHORIZED = "UNAUTHORIZED"
RATE_LIMITED = "RATE_LIMITED"
QUOTA_UNAVAILABLE = "QUOTA_UNAVAILABLE"
INTERNAL_ERROR = "INTERNAL_ERROR"


class ApiError(Exception):
    """An error that maps directly onto an HTTP response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        self.headers = dict(headers or {})

    def to_response(self) -> JSONResponse:
        return error_response(
            self.status_code,
            self.code,
            self.message,
            details=self.details,
            headers=self.headers,
        )


def error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    details: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {"error": message, "code": code}
    if details is not None:
        content["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=content, headers=dict(headers or {}))


def validation_error(message: str, details: Any = None) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, message, details)


def internal_error_response() -> JSONResponse:
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        INTERNAL_ERROR,
        "Internal server error",
    )


def _describe_validation_errors(errors) -> str:
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    field = ".".join(location)
    message = str(first.get("msg") or "Invalid request body")
    return f'Invalid "{field}" field: {message}' if field else message


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return exc.to_response()


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = list(exc.errors())
    if any(error.get("type") == "json_invalid" for error in errors):
        return error_response(status.HTTP_400_BAD_REQUEST, BAD_REQUEST, "Invalid JSON body")

    logger.info(
        "Validation error on %s: %s", request.url.path, _describe_validation_errors(errors)
    )
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in errors
    ]
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        VALIDATION_ERROR,
        _describe_validation_errors(errors),
        details=details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
