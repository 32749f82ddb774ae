from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds the auth service can surface.

    The value doubles as the stable ``error.code`` in API envelopes.
    """

    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    DATABASE = "database_error"
    UNIQUE_CONSTRAINT = "unique_constraint"
    SERVER = "server_error"


# Every kind must appear here; checked at import below.
ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.INVALID_TOKEN: 400,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.DATABASE: 500,
    ErrorKind.UNIQUE_CONSTRAINT: 409,
    ErrorKind.SERVER: 500,
}

_unmapped = set(ErrorKind) - set(ERROR_STATUS)
if _unmapped:
    raise RuntimeError(f"error kinds without status mapping: {sorted(k.value for k in _unmapped)}")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Subclasses only pick a ``kind``; the HTTP status and error code are both
    derived from it so handlers can dispatch on the enum instead of the class.
    """

    kind: ErrorKind = ErrorKind.SERVER

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.kind]

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Malformed input: bad email or id format, oversized bulk request (400)."""
    kind = ErrorKind.VALIDATION


class ConflictError(ServiceError):
    """Email already registered (409)."""
    kind = ErrorKind.CONFLICT


class AuthenticationError(ServiceError):
    """Wrong credentials or provider; message kept generic (401)."""
    kind = ErrorKind.UNAUTHORIZED


class AuthorizationError(ServiceError):
    """Authenticated but missing required state (403)."""
    kind = ErrorKind.FORBIDDEN


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class AccountLockedError(ServiceError):
    """Lockout window active (423)."""
    kind = ErrorKind.ACCOUNT_LOCKED


class InvalidTokenError(ServiceError):
    kind = ErrorKind.INVALID_TOKEN


class TokenExpiredError(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED


class RateLimitError(ServiceError):
    kind = ErrorKind.RATE_LIMITED


class DatabaseError(ServiceError):
    """Identity store failure or timeout; message is sanitized in production."""
    kind = ErrorKind.DATABASE


class UniqueConstraintError(ServiceError):
    kind = ErrorKind.UNIQUE_CONSTRAINT


class ServerError(ServiceError):
    kind = ErrorKind.SERVER


__all__ = [
    "ERROR_STATUS",
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "AccountLockedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "RateLimitError",
    "DatabaseError",
    "UniqueConstraintError",
    "ServerError",
]
