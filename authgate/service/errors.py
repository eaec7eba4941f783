from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - upstream_unavailable (503)
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


class InvalidCredentials(AuthenticationError):
    """Identifier/password pair rejected; never says which half was wrong."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """Token is malformed, forged, expired or of the wrong type."""

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(InvalidToken):
    """Uniform refresh failure; callers never learn which check failed."""

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Client-side: the refresh chain is gone and the user must sign in again."""

    def __init__(self, message: str = "Session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SubjectNotFound(NotFoundError):
    """The identity service no longer knows the subject."""

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class SubjectExists(ConflictError):
    def __init__(self, message: str = "User already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UpstreamUnavailable(ServiceError):
    """The identity service could not be reached (503)."""
    status_code = 503
    error_code = "upstream_unavailable"

    def __init__(self, message: str = "Identity service unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "InvalidRefreshToken",
    "SessionExpiredError",
    "NotFoundError",
    "SubjectNotFound",
    "ConflictError",
    "SubjectExists",
    "UpstreamUnavailable",
    "ServerError",
    "InternalError",
]
