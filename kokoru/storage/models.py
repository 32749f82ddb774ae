from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


@dataclass
class Identity:
    """Persisted authentication record for one user.

    ``email_verification_token`` and ``password_reset_token`` always hold the
    SHA-256 hex digest of the value mailed to the user, never the raw token.
    ``password_hash`` is set only for local identities.
    """

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    password_hash: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.LOCAL
    google_id: Optional[str] = None
    profile_image_url: Optional[str] = None
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    has_logged_in: bool = False
    has_completed_onboarding: bool = False
    onboarding_step: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, **fields) -> "Identity":
        return cls(id=str(uuid.uuid4()), email=email, **fields)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.locked_until is not None and self.locked_until > (now or utcnow())


# Fields a caller may change through ``update``; id and created_at are fixed.
MUTABLE_IDENTITY_FIELDS = frozenset(
    {
        "email",
        "first_name",
        "last_name",
        "password_hash",
        "auth_provider",
        "google_id",
        "profile_image_url",
        "is_email_verified",
        "email_verification_token",
        "email_verification_expires",
        "password_reset_token",
        "password_reset_expires",
        "password_changed_at",
        "refresh_token",
        "login_attempts",
        "locked_until",
        "last_login_at",
        "has_logged_in",
        "has_completed_onboarding",
        "onboarding_step",
    }
)
