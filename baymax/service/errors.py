from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for pipeline exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``.
    ``refresh_token`` carries a replacement credential computed before the
    failure so the client does not lose a rotation on error paths.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
        error_code: Optional[str] = None,
        upstream_status: Optional[int] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail
        self.upstream_status = upstream_status
        self.refresh_token = refresh_token


class BadRequestError(ServiceError):
    """Malformed, missing or invalid request fields (400)."""
    status_code = 400
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Origin not allowed or cross-identity session access (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class MethodNotAllowedError(ServiceError):
    status_code = 405
    error_code = "method_not_allowed"


class ConflictError(ServiceError):
    """Resource already exists, e.g. a taken username (409)."""
    status_code = 409
    error_code = "conflict"


class PayloadTooLargeError(ServiceError):
    status_code = 413
    error_code = "payload_too_large"


class UnsupportedMediaTypeError(ServiceError):
    status_code = 415
    error_code = "unsupported_media_type"


class TooManyAttemptsError(ServiceError):
    """Login lockout in effect (429)."""
    status_code = 429
    error_code = "too_many_attempts"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServiceError):
    """The chat-completion API failed; terminal for the request (502)."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "MethodNotAllowedError",
    "ConflictError",
    "PayloadTooLargeError",
    "UnsupportedMediaTypeError",
    "TooManyAttemptsError",
    "ServerError",
    "UpstreamError",
]
