from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import Response

from baymax.api.error_handling import error_response
from baymax.config import Settings
from baymax.logging import get_logger
from baymax.service.errors import (
    BadRequestError,
    ForbiddenError,
    MethodNotAllowedError,
    NotFoundError,
    PayloadTooLargeError,
    ServerError,
    ServiceError,
    UnsupportedMediaTypeError,
)

logger = get_logger(__name__)

# Every path the service answers, with the methods each accepts
ROUTE_METHODS: Dict[str, frozenset] = {
    "/health": frozenset({"GET"}),
    "/": frozenset({"POST"}),
    "/clear": frozenset({"POST"}),
    "/history": frozenset({"GET", "POST"}),
    "/signup": frozenset({"POST"}),
    "/login": frozenset({"POST"}),
    "/token": frozenset({"GET"}),
}

PUBLIC_PATHS = frozenset({"/health"})
BODY_METHODS = frozenset({"POST"})
# POST routes that accept an empty body without a Content-Type
BODY_OPTIONAL_PATHS = frozenset({"/clear"})

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-Request-ID"
CORS_MAX_AGE = "86400"


def origin_allowed(origin: Optional[str], settings: Settings) -> bool:
    if not origin:
        return True
    if settings.allows_any_origin:
        return True
    return origin.rstrip("/") in settings.allowed_origins


def cors_headers(origin: Optional[str], settings: Settings) -> Dict[str, str]:
    """CORS headers for a response to ``origin``; empty for origin-less requests."""
    if not origin or not origin_allowed(origin, settings):
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


def _is_json_content_type(value: Optional[str]) -> bool:
    if not value:
        return False
    return value.split(";", 1)[0].strip().lower() == "application/json"


def _declares_body(headers: Any) -> bool:
    if headers.get("transfer-encoding"):
        return True
    declared = headers.get("content-length")
    return declared is not None and declared.strip() not in ("", "0")


def check_request(method: str, path: str, headers: Any, settings: Settings) -> None:
    """Header-level admission checks; raises the matching ServiceError."""
    allowed_methods = ROUTE_METHODS.get(path)
    if allowed_methods is None:
        raise NotFoundError("Not found")

    origin = headers.get("origin")
    if path not in PUBLIC_PATHS and not origin_allowed(origin, settings):
        raise ForbiddenError("Origin not allowed")

    if method == "OPTIONS":
        return
    if method not in allowed_methods:
        raise MethodNotAllowedError("Method not allowed")

    if method in BODY_METHODS:
        if path in BODY_OPTIONAL_PATHS and not _declares_body(headers):
            return
        if not _is_json_content_type(headers.get("content-type")):
            raise UnsupportedMediaTypeError("Content-Type must be application/json")
        declared = headers.get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError as exc:
                raise BadRequestError("Invalid Content-Length") from exc
            if declared_size > settings.max_body_bytes:
                raise PayloadTooLargeError("Request body too large")


async def guard_requests(request: Request, call_next):
    """Reject malformed or disallowed requests before any handler runs."""
    from baymax.service.runtime import get_runtime

    settings = get_runtime().settings
    method = request.method.upper()
    path = request.url.path
    origin = request.headers.get("origin")
    headers = cors_headers(origin, settings)

    try:
        check_request(method, path, request.headers, settings)
    except ServiceError as exc:
        logger.warning(
            "request_rejected",
            method=method,
            path=path,
            status_code=exc.status_code,
            reason=exc.message,
            origin=origin,
        )
        return error_response(exc, headers=headers)

    if method == "OPTIONS":
        preflight = Response(status_code=204, headers=headers)
        preflight.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
        preflight.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
        preflight.headers["Access-Control-Max-Age"] = CORS_MAX_AGE
        return preflight

    try:
        response = await call_next(request)
    except Exception as exc:
        # Rendered here so the envelope still carries CORS headers
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=path,
            method=method,
            error_type=type(exc).__name__,
        )
        return error_response(ServerError("Internal server error"), headers=headers)
    for name, value in headers.items():
        response.headers.setdefault(name, value)
    return response


async def _read_limited(request: Request) -> bytes:
    from baymax.service.runtime import get_runtime

    limit = get_runtime().settings.max_body_bytes
    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise PayloadTooLargeError("Request body too large")
        chunks.append(chunk)
    return b"".join(chunks)


async def read_optional_json_body(request: Request) -> dict:
    """Like :func:`read_json_body` but an empty body reads as ``{}``."""
    raw = await _read_limited(request)
    if not raw.strip():
        return {}
    return _parse_object(raw)


async def read_json_body(request: Request) -> dict:
    """Stream the request body under the size ceiling and parse a JSON object."""
    return _parse_object(await _read_limited(request))


def _parse_object(raw: bytes) -> dict:
    try:
        body = json.loads(raw) if raw else None
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BadRequestError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body
