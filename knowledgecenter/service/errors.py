from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
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


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthError(ServiceError):
    """Typed failure raised by the session service.

    ``default_message`` is the internal description; ``public_message`` is what the
    HTTP boundary shows to clients. ``reason`` is a stable tag echoed in the error
    details so callers never have to match on message text.
    """

    reason: str = "auth_error"
    default_message: str = "authentication error"
    public_message: str = "Authentication error"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        detail = {"reason": self.reason, **(kwargs.pop("detail", None) or {})}
        super().__init__(message or self.default_message, detail=detail, **kwargs)


class InvalidEmail(AuthError, ValidationError):
    reason = "invalid_email"
    default_message = "invalid email format"
    public_message = "Invalid email format"


class InvalidName(AuthError, ValidationError):
    reason = "invalid_name"
    default_message = "name must have at least one locale value"
    public_message = "Name must have at least one locale value"


class InvalidPassword(AuthError, ValidationError):
    reason = "invalid_password"
    default_message = "password must be at least 8 characters"
    public_message = "Password must be at least 8 characters"


class EmailExists(AuthError, ConflictError):
    reason = "email_exists"
    default_message = "email already exists"
    public_message = "Email already exists"


class LoginIDExists(AuthError, ConflictError):
    reason = "login_id_exists"
    default_message = "login_id already exists"
    public_message = "Login ID already exists"


class InvalidCredentials(AuthError, AuthenticationError):
    """Unknown user and wrong password are indistinguishable on purpose."""

    reason = "invalid_credentials"
    default_message = "invalid credentials"
    public_message = "Invalid credentials"


class InvalidToken(AuthError, AuthenticationError):
    reason = "invalid_token"
    default_message = "invalid or expired token"
    public_message = "Invalid refresh token"


class TokenRevoked(AuthError, AuthenticationError):
    reason = "token_revoked"
    default_message = "token has been revoked"
    public_message = "Token has been revoked. Please login again."


class TokenExpired(AuthError, AuthenticationError):
    reason = "token_expired"
    default_message = "token has expired"
    public_message = "Refresh token has expired. Please login again."


class PublicGroupNotFound(AuthError, ServerError):
    reason = "public_group_not_found"
    default_message = "public group not found"
    public_message = "System configuration error"


class RandomSourceError(ServerError):
    """The operating system RNG could not supply bytes."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "AuthError",
    "InvalidEmail",
    "InvalidName",
    "InvalidPassword",
    "EmailExists",
    "LoginIDExists",
    "InvalidCredentials",
    "InvalidToken",
    "TokenRevoked",
    "TokenExpired",
    "PublicGroupNotFound",
    "RandomSourceError",
]
