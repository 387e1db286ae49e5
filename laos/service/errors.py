from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500, 502)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServerError):
    """An identity provider or mail relay failed (502)."""
    status_code = 502


# token / identity taxonomy


class TokenInvalid(ForbiddenError):
    """Token is malformed, carries a bad signature or has expired."""


class RefreshInvalid(TokenInvalid):
    """Presented refresh token failed validation or is not a refresh token."""


class RefreshNotRecognized(ForbiddenError):
    """Refresh token is well formed but no account currently holds it."""


class IdentityNotFound(AuthenticationError):
    """Token claims point at an account that no longer exists."""


class Unauthenticated(AuthenticationError):
    """No principal was established for a request that needs one."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "UpstreamError",
    "TokenInvalid",
    "RefreshInvalid",
    "RefreshNotRecognized",
    "IdentityNotFound",
    "Unauthenticated",
]
