from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Sequence

from kokoru.logging import get_logger
from kokoru.storage.errors import ConstraintViolation
from kokoru.storage.models import (
    MUTABLE_IDENTITY_FIELDS,
    AuthProvider,
    Identity,
    utcnow,
)


class MemoryStore:
    """In-memory identity store for tests and local development.

    Records are copied on the way in and out so callers never hold a live
    reference to stored state.
    """

    def __init__(self, *, bulk_update_limit: int = 100) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.bulk_update_limit = bulk_update_limit
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(identity: Optional[Identity]) -> Optional[Identity]:
        return replace(identity) if identity is not None else None

    def _find(self, predicate) -> Optional[Identity]:
        for identity in self.identities.values():
            if predicate(identity):
                return identity
        return None

    def _check_unique(self, identity: Identity, *, exclude_id: Optional[str] = None) -> None:
        email = identity.email.lower()
        for existing in self.identities.values():
            if existing.id == exclude_id:
                continue
            if existing.email.lower() == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity.google_id and existing.google_id == identity.google_id:
                raise ConstraintViolation("google id already linked", {"field": "google_id"})

    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("identity already exists", {"field": "id"})
            self._check_unique(identity)
            stored = replace(identity, email=identity.email.lower())
            self.identities[stored.id] = stored
            return replace(stored)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self._copy(self.identities.get(identity_id))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        target = email.strip().lower()
        with self._data_lock:
            return self._copy(self._find(lambda i: i.email.lower() == target))

    def get_identity_by_google_id(self, google_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self._copy(self._find(lambda i: i.google_id == google_id))

    def get_identity_by_verification_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        now = now or utcnow()
        with self._data_lock:
            return self._copy(
                self._find(
                    lambda i: i.email_verification_token == token_hash
                    and i.email_verification_expires is not None
                    and i.email_verification_expires > now
                )
            )

    def get_identity_by_reset_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        now = now or utcnow()
        with self._data_lock:
            return self._copy(
                self._find(
                    lambda i: i.password_reset_token == token_hash
                    and i.password_reset_expires is not None
                    and i.password_reset_expires > now
                )
            )

    def get_identity_by_refresh_token(self, refresh_token: str) -> Optional[Identity]:
        with self._data_lock:
            return self._copy(self._find(lambda i: i.refresh_token == refresh_token))

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        unknown = set(fields) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {sorted(unknown)}")
        with self._data_lock:
            current = self.identities.get(identity_id)
            if current is None:
                return None
            if "email" in fields and fields["email"]:
                fields["email"] = fields["email"].lower()
            updated = replace(current, **fields, updated_at=utcnow())
            if "email" in fields or "google_id" in fields:
                self._check_unique(updated, exclude_id=identity_id)
            self.identities[identity_id] = updated
            return replace(updated)

    def delete_identity(self, identity_id: str) -> bool:
        with self._data_lock:
            return self.identities.pop(identity_id, None) is not None

    def increment_login_attempts(self, identity_id: str) -> int:
        with self._data_lock:
            current = self.identities.get(identity_id)
            if current is None:
                return 0
            current.login_attempts += 1
            current.updated_at = utcnow()
            return current.login_attempts

    def reset_login_attempts(self, identity_id: str) -> bool:
        with self._data_lock:
            current = self.identities.get(identity_id)
            if current is None:
                return False
            current.login_attempts = 0
            current.locked_until = None
            current.updated_at = utcnow()
            return True

    def lock_identity(self, identity_id: str, until: datetime) -> bool:
        with self._data_lock:
            current = self.identities.get(identity_id)
            if current is None:
                return False
            current.locked_until = until
            current.updated_at = utcnow()
            return True

    def bulk_update_identities(self, identity_ids: Sequence[str], **fields) -> int:
        if len(identity_ids) > self.bulk_update_limit:
            raise ValueError(f"bulk update limited to {self.bulk_update_limit} identities")
        unknown = set(fields) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {sorted(unknown)}")
        with self._data_lock:
            # Build every new record first so a failure leaves nothing applied
            staged: Dict[str, Identity] = {}
            now = utcnow()
            for identity_id in identity_ids:
                current = self.identities.get(identity_id)
                if current is None:
                    continue
                staged[identity_id] = replace(current, **fields, updated_at=now)
            if "email" in fields or "google_id" in fields:
                for identity_id, candidate in staged.items():
                    self._check_unique(candidate, exclude_id=identity_id)
                if len(staged) > 1 and fields.get("email"):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            self.identities.update(staged)
            return len(staged)

    def get_identity_stats(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._data_lock:
            identities = list(self.identities.values())
        verified = sum(1 for i in identities if i.is_email_verified)
        return {
            "total": len(identities),
            "verified": verified,
            "unverified": len(identities) - verified,
            "google_users": sum(1 for i in identities if i.auth_provider == AuthProvider.GOOGLE),
            "locked_users": sum(1 for i in identities if i.is_locked(now)),
        }
