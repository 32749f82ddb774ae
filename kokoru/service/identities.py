from __future__ import annotations

import asyncio
import random
import re
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence

from kokoru.logging import get_logger, sanitize_error_message
from kokoru.service.errors import DatabaseError, UniqueConstraintError, ValidationError
from kokoru.storage.errors import ConstraintViolation
from kokoru.storage.models import Identity

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MAX_EMAIL_LENGTH = 255


class IdentityStore(Protocol):
    """Persistence contract for identity records.

    Lookups return ``None``/``False`` on absence and never raise for it.
    Writes that break email or google id uniqueness raise
    ``ConstraintViolation``.
    """

    def create_identity(self, identity: Identity) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_google_id(self, google_id: str) -> Optional[Identity]: ...

    def get_identity_by_verification_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]: ...

    def get_identity_by_reset_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]: ...

    def get_identity_by_refresh_token(self, refresh_token: str) -> Optional[Identity]: ...

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]: ...

    def delete_identity(self, identity_id: str) -> bool: ...

    def increment_login_attempts(self, identity_id: str) -> int: ...

    def reset_login_attempts(self, identity_id: str) -> bool: ...

    def lock_identity(self, identity_id: str, until: datetime) -> bool: ...

    def bulk_update_identities(self, identity_ids: Sequence[str], **fields) -> int: ...

    def get_identity_stats(self, *, now: Optional[datetime] = None) -> Dict[str, int]: ...


def normalize_email(email: Any) -> str:
    if not isinstance(email, str):
        raise ValidationError("Invalid email format")
    normalized = email.strip().lower()
    if not normalized or len(normalized) > MAX_EMAIL_LENGTH or not EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format")
    return normalized


def validate_identity_id(identity_id: Any) -> str:
    try:
        parsed = uuid.UUID(str(identity_id))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError("Invalid user ID format") from None
    if parsed.version != 4 or str(parsed) != str(identity_id).lower():
        raise ValidationError("Invalid user ID format")
    return str(parsed)


class IdentityGateway:
    """Runs blocking ``IdentityStore`` calls off the event loop.

    Each call gets a timeout. Driver and timeout failures become
    ``DatabaseError``; uniqueness failures become ``UniqueConstraintError``.
    Outside production the original message is kept for debugging.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        timeout_seconds: float = 3.0,
        production: bool = False,
        security_delay_ms: tuple[int, int] = (50, 150),
    ) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.production = production
        self.security_delay_ms = security_delay_ms

    async def call(self, operation: str, *args, **kwargs):
        method = getattr(self.store, operation)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(method, *args, **kwargs), self.timeout_seconds
            )
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            logger.warning("identity_constraint_violation", operation=operation, field=field)
            message = "Email already exists" if field == "email" else f"{field} already exists"
            raise UniqueConstraintError(message, detail={"field": field}) from exc
        except asyncio.TimeoutError as exc:
            logger.error("identity_store_timeout", operation=operation, timeout=self.timeout_seconds)
            raise DatabaseError("Database operation timed out") from exc
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        except Exception as exc:
            logger.error(
                "identity_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self.production:
                raise DatabaseError("Database operation failed") from exc
            raise DatabaseError(
                f"Database operation failed: {sanitize_error_message(str(exc))}"
            ) from exc

    async def security_delay(self) -> None:
        low, high = self.security_delay_ms
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high) / 1000)

    async def find_by_email(self, email: str) -> Optional[Identity]:
        """Email lookup padded with a random delay on every outcome."""
        try:
            return await self.call("get_identity_by_email", email)
        finally:
            await self.security_delay()
