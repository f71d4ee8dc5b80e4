from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
    - server_error (500)
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


class AuthFailure(str, Enum):
    """Why authentication failed; gateway terminals plus bad login credentials."""

    NO_TOKEN = "no_token"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    REVOKED = "revoked"
    IDENTITY_MISSING = "identity_missing"
    LOCKED = "locked"
    STALE_PASSWORD = "stale_password"
    INVALID_CREDENTIALS = "invalid_credentials"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str,
        *,
        kind: AuthFailure = AuthFailure.MALFORMED,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail={"reason": kind.value, **(detail or {})})
        self.kind = kind


class LockedError(ServiceError):
    """Account or login identifier temporarily locked (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(
            message,
            detail={
                "reason": AuthFailure.LOCKED.value,
                "retryAfterSeconds": self.retry_after_seconds,
            },
        )
        self.kind = AuthFailure.LOCKED


class AuthorizationError(ServiceError):
    """Access denied - missing role or permission (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after_seconds: int = 1) -> None:
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(message, detail={"retryAfterSeconds": self.retry_after_seconds})


class InternalError(ServiceError):
    """Unexpected failure (500); detail stays server-side under a correlation id."""
    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "internal server error", *, correlation_id: Optional[str] = None) -> None:
        super().__init__(message, detail={"correlationId": correlation_id} if correlation_id else None)
        self.correlation_id = correlation_id


class ConfigurationError(Exception):
    """Fatal misconfiguration detected while constructing a service."""


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpired(TokenError):
    """Token signature is valid but its expiry has passed."""


class TokenInvalid(TokenError):
    """Bad signature, wrong type, wrong issuer/audience, or malformed claims."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthFailure",
    "AuthenticationError",
    "LockedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "InternalError",
    "ConfigurationError",
    "TokenError",
    "TokenExpired",
    "TokenInvalid",
]
