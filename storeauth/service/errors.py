from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - unauthorized, invalid_credentials, two_factor_required,
      invalid_token, session_revoked (401)
    - forbidden, account_disabled (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
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


class InvalidCredentials(AuthenticationError):
    """Unknown login or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorRequired(AuthenticationError):
    """Password accepted but a second factor must accompany it."""
    error_code = "two_factor_required"

    def __init__(self, message: str = "two-factor code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredToken(AuthenticationError):
    """A refresh, reset or verification token was unknown, spent or expired."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevoked(AuthenticationError):
    error_code = "session_revoked"

    def __init__(self, message: str = "session revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many failed attempts; no credential check is performed while locked."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str = "account locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabled(ForbiddenError):
    """Account is suspended or deactivated."""
    error_code = "account_disabled"

    def __init__(self, message: str = "account disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TokenError(Exception):
    """Base class for bearer-token decoding failures."""


class MalformedToken(TokenError):
    pass


class SignatureInvalid(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class WrongTokenType(TokenError):
    pass


class UnknownRole(ValueError):
    """A role claim that names no known role."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "TwoFactorRequired",
    "InvalidOrExpiredToken",
    "SessionRevoked",
    "AccountLocked",
    "ForbiddenError",
    "AccountDisabled",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "TokenError",
    "MalformedToken",
    "SignatureInvalid",
    "TokenExpired",
    "WrongTokenType",
    "UnknownRole",
]
