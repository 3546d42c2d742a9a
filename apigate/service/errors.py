from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_failed (400)
    - auth_missing / auth_invalid / auth_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - storage_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_failed"

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


class ValidationFailedError(ServiceError):
    """Request body or parameters are malformed (400)."""
    status_code = 400
    error_code = "validation_failed"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "auth_invalid"


class AuthMissingError(AuthenticationError):
    """No credential was presented (401)."""
    error_code = "auth_missing"


class AuthInvalidError(AuthenticationError):
    """Credential is malformed, forged, revoked or unsupported (401)."""
    error_code = "auth_invalid"


class AuthExpiredError(AuthenticationError):
    """Token or key is past its expiry, or the token was blacklisted (401)."""
    error_code = "auth_expired"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed to perform the action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = max(0, int(retry_after))
        merged = {**(detail or {}), "retry_after": self.retry_after}
        super().__init__(message, detail=merged)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StorageUnavailableError(ServerError):
    """Backing store failed after the transient retry (503)."""
    status_code = 503
    error_code = "storage_unavailable"


__all__ = [
    "ServiceError",
    "ValidationFailedError",
    "AuthenticationError",
    "AuthMissingError",
    "AuthInvalidError",
    "AuthExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "StorageUnavailableError",
]
