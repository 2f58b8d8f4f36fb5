from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - backend_unavailable (503)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """No valid session, or credentials rejected (401).

    Missing subjects and wrong passwords share the same message.
    """
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """CSRF mismatch or missing role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource not found or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class BackendUnavailableError(ServiceError):
    """Cache or durable store unreachable where no deny outcome applies (503)."""
    status_code = 503
    error_code = "backend_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "BackendUnavailableError",
]
