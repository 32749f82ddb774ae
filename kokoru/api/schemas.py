from __future__ import annotations

import unicodedata
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from kokoru.service.auth import AuthResult, AuthTokens, CurrentUser, SanitizedIdentity
from kokoru.service.errors import ErrorKind

MAX_EMAIL_LENGTH = 255
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 2048

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the ``ErrorKind`` values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _EmailPayload(BaseModel):
    email: str = Field(..., min_length=3, max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class RegisterRequest(_EmailPayload):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginRequest(_EmailPayload):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ForgotPasswordRequest(_EmailPayload):
    pass


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class GoogleAuthRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=512)
    state: str = Field(..., min_length=1, max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    auth_provider: str
    is_email_verified: bool
    has_logged_in: bool
    has_completed_onboarding: bool
    onboarding_step: int
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: SanitizedIdentity) -> "UserResponse":
        return cls(**asdict(identity))


class TokensResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "TokensResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokensResponse
    requires_onboarding: bool
    onboarding_step: int
    is_new_user: bool = False

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            user=UserResponse.from_identity(result.user),
            tokens=TokensResponse.from_tokens(result.tokens),
            requires_onboarding=result.requires_onboarding,
            onboarding_step=result.onboarding_step,
            is_new_user=result.is_new_user,
        )


class CurrentUserResponse(BaseModel):
    user: UserResponse
    requires_onboarding: bool
    onboarding_step: int

    @classmethod
    def from_current(cls, current: CurrentUser) -> "CurrentUserResponse":
        return cls(
            user=UserResponse.from_identity(current.user),
            requires_onboarding=current.requires_onboarding,
            onboarding_step=current.onboarding_step,
        )


class GoogleAuthUrlResponse(BaseModel):
    authorization_url: str
    state: str
