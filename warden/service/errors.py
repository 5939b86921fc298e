from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` that
    clients branch on. Generic classes use lowercase codes; codes that drive
    client-side MFA flows are upper-case constants (``CODE_EXPIRED`` etc.).
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
    """Request is malformed or its preconditions do not hold."""
    pass


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


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialsError(AuthenticationError):
    """Email or password rejected; never says which one."""

    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password") -> None:
        super().__init__(message)


class AccountLockedError(ForbiddenError):
    error_code = "ACCOUNT_LOCKED"

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(
            "Account is temporarily locked due to repeated failed logins",
            detail={"lockedUntil": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class InvalidTempTokenError(AuthenticationError):
    error_code = "INVALID_TEMP_TOKEN"

    def __init__(self, message: str = "Invalid or expired temporary token") -> None:
        super().__init__(message)


class MFACodeError(ServiceError):
    """A submitted MFA code was not accepted.

    The status differs per flow: 401 while authenticating (login, delete
    account) and 400 when an already authenticated user changes MFA settings.
    """

    NO_CODE = "NO_MFA_CODE"
    EXPIRED = "CODE_EXPIRED"
    INVALID = "INVALID_CODE"
    EXHAUSTED = "TOO_MANY_ATTEMPTS"

    _MESSAGES = {
        NO_CODE: "No verification code has been issued; request a new code",
        EXPIRED: "Verification code has expired; request a new code",
        INVALID: "Invalid verification code",
        EXHAUSTED: "Too many incorrect codes; sign in again to get a new code",
    }

    def __init__(self, error_code: str, *, status_code: int = 401) -> None:
        super().__init__(
            self._MESSAGES[error_code], status_code=status_code, error_code=error_code
        )


class MFARequiredError(BadRequestError):
    error_code = "MFA_REQUIRED"

    def __init__(self, message: str = "MFA code required") -> None:
        super().__init__(message)


class MFANotEnabledError(BadRequestError):
    error_code = "MFA_NOT_ENABLED"

    def __init__(self, message: str = "MFA is not enabled for this account") -> None:
        super().__init__(message)


class MFAAlreadyEnabledError(BadRequestError):
    error_code = "MFA_ALREADY_ENABLED"

    def __init__(self, message: str = "MFA is already enabled for this account") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidTempTokenError",
    "MFACodeError",
    "MFARequiredError",
    "MFANotEnabledError",
    "MFAAlreadyEnabledError",
]
