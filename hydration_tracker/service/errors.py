from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on:
    - VALIDATION_ERROR (400)
    - MISSING_TOKEN / INVALID_CREDENTIALS / INVALID_TOKEN / TOKEN_EXPIRED /
      WRONG_TOKEN_TYPE (401)
    - INVALID_SESSION (401) for revoked and expired sessions alike
    - ACCOUNT_DISABLED (401)
    - NOT_FOUND (404)
    - USER_ALREADY_EXISTS (409)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class MissingToken(AuthenticationError):
    """No bearer token on a protected request."""
    error_code = "MISSING_TOKEN"


class InvalidCredentials(AuthenticationError):
    """Unknown account or wrong password; the two are never distinguished."""
    error_code = "INVALID_CREDENTIALS"


class InvalidToken(AuthenticationError):
    """Token is malformed, has a bad signature, or wrong issuer/audience."""
    error_code = "INVALID_TOKEN"


class TokenExpired(AuthenticationError):
    """Token signature is valid but ``exp`` has passed."""
    error_code = "TOKEN_EXPIRED"


class WrongTokenType(AuthenticationError):
    """Token verified but was minted for a different purpose."""
    error_code = "WRONG_TOKEN_TYPE"


class SessionRevoked(AuthenticationError):
    """Session not found or no longer active."""
    error_code = "INVALID_SESSION"


class SessionExpired(AuthenticationError):
    """Session passed its ``expires_at``; it is revoked as a side effect."""
    error_code = "INVALID_SESSION"


class AccountDisabled(AuthenticationError):
    """Owning account is deactivated."""
    error_code = "ACCOUNT_DISABLED"


class AccountDeleted(AccountDisabled):
    """Owning account has been deleted."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "USER_ALREADY_EXISTS"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingToken",
    "InvalidCredentials",
    "InvalidToken",
    "TokenExpired",
    "WrongTokenType",
    "SessionRevoked",
    "SessionExpired",
    "AccountDisabled",
    "AccountDeleted",
    "NotFoundError",
    "ConflictError",
]
