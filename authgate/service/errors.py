from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Each subclass carries a stable ``error_code`` shared by the HTTP envelope
    and the RPC error object, plus the HTTP ``status_code`` it maps to:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - unavailable (503)
    - timeout (504)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Raised with the same message for every cause so callers cannot
    distinguish unknown users, bad passwords, blocked accounts or
    revoked sessions.
    """
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UnavailableError(ServiceError):
    """A backing store could not be reached (503)."""
    status_code = 503
    error_code = "unavailable"


class ServiceTimeoutError(ServiceError):
    """The caller's deadline elapsed before the operation finished (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "RateLimitedError",
    "UnavailableError",
    "ServiceTimeoutError",
]
