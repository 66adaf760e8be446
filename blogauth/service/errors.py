from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure reasons the auth subsystem reports to callers."""

    INVALID_CREDENTIALS = "invalid_credentials"
    NO_TOKEN = "no_token"
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ACCOUNT_INACTIVE = "account_inactive"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"
    INVALID = "invalid"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an ``ErrorKind`` and an HTTP ``status_code``. Messages
    are generic and safe to return to clients; diagnostic context belongs in
    ``detail`` and in server logs only.
    """

    status_code: int = 400
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class InvalidCredentialsError(ServiceError):
    status_code = 401
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class NoTokenError(ServiceError):
    status_code = 401
    kind = ErrorKind.NO_TOKEN
    default_message = "authentication required"


class InvalidTokenError(ServiceError):
    status_code = 401
    kind = ErrorKind.INVALID_TOKEN
    default_message = "invalid or expired token"


class TokenExpiredError(ServiceError):
    status_code = 401
    kind = ErrorKind.EXPIRED
    default_message = "token expired"


class TokenRevokedError(ServiceError):
    status_code = 401
    kind = ErrorKind.REVOKED
    default_message = "token revoked"


class AccountInactiveError(ServiceError):
    status_code = 403
    kind = ErrorKind.ACCOUNT_INACTIVE
    default_message = "account is inactive"


class ForbiddenError(ServiceError):
    """Access denied: insufficient role or session policy violation (403)."""

    status_code = 403
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class RateLimitedError(ServiceError):
    status_code = 429
    kind = ErrorKind.RATE_LIMITED
    default_message = "too many requests"


class InternalError(ServiceError):
    """A collaborator (database, cache) failed or timed out (500)."""

    status_code = 500
    kind = ErrorKind.INTERNAL
    default_message = "internal error"


class InvalidOneTimeTokenError(ServiceError):
    """Unknown, expired, used or wrong-purpose one-time token (400)."""

    status_code = 400
    kind = ErrorKind.INVALID
    default_message = "invalid or expired token"


class ValidationError(ServiceError):
    status_code = 400
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "validation failed"


class ConflictError(ServiceError):
    status_code = 409
    kind = ErrorKind.CONFLICT
    default_message = "conflict"


__all__ = [
    "AccountInactiveError",
    "ConflictError",
    "ErrorKind",
    "ForbiddenError",
    "InternalError",
    "InvalidCredentialsError",
    "InvalidOneTimeTokenError",
    "InvalidTokenError",
    "NoTokenError",
    "RateLimitedError",
    "ServiceError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ValidationError",
]
