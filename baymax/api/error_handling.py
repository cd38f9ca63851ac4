from __future__ import annotations

from typing import Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from baymax.api.schemas import ErrorEnvelope
from baymax.logging import get_logger
from baymax.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    415: "unsupported_media_type",
    429: "too_many_attempts",
    500: "server_error",
    502: "upstream_error",
}

_STATUS_TO_MESSAGE = {
    404: "Not found",
    405: "Method not allowed",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    refresh_token: Optional[str] = None,
    upstream_status: Optional[int] = None,
    detail: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        error=message,
        code=code or _error_code_for_status(status_code),
        refresh_token=refresh_token,
        upstream_status=upstream_status,
        detail=detail,
    )
    return JSONResponse(status_code=status_code, content=envelope.to_json(), headers=headers)


def error_response(
    exc: ServiceError, *, headers: Optional[Mapping[str, str]] = None
) -> JSONResponse:
    """Render a ServiceError outside the exception-handler stack (middleware)."""
    return _error_response(
        exc.status_code,
        exc.message,
        code=exc.error_code,
        refresh_token=exc.refresh_token,
        upstream_status=exc.upstream_status,
        detail=exc.detail,
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every failure leaves as a JSON error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            upstream_status=exc.upstream_status,
        )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "query")
        message = f"Invalid {location}" if location else "Invalid request"
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = _STATUS_TO_MESSAGE.get(exc.status_code)
        if message is None:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "Internal server error", code="server_error")
