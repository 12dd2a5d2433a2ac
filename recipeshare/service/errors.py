from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable ``error_code`` alongside its HTTP status so
    clients can branch on the category without parsing messages:
    - validation_error (400)
    - invalid_credentials, otp_invalid, unauthorized, session_expired (401)
    - forbidden, csrf_rejected (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Email or password did not match; never says which (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class OtpInvalidOrExpired(ServiceError):
    """OTP code wrong, consumed, expired or locked out (401)."""
    status_code = 401
    error_code = "otp_invalid"


class NotAuthenticated(ServiceError):
    """No live authenticated session (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpired(NotAuthenticated):
    """Session ended by the idle window or absolute lifetime (401).

    ``detail["reason"]`` is ``afk_timeout`` or ``session_expired`` so the
    client can show an idle-specific message.
    """
    error_code = "session_expired"


class Forbidden(ServiceError):
    """Authenticated but the role is not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfRejected(ServiceError):
    """Missing or mismatched anti-forgery token (403)."""
    status_code = 403
    error_code = "csrf_rejected"


class NotFound(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class Conflict(ServiceError):
    """Resource conflict, e.g. duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimited(ServiceError):
    """Rate limit exceeded (429); ``retry_after`` feeds the Retry-After header."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "OtpInvalidOrExpired",
    "NotAuthenticated",
    "SessionExpired",
    "Forbidden",
    "CsrfRejected",
    "NotFound",
    "Conflict",
    "RateLimited",
]
