from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Optional, Set

from kokoru.config import Settings
from kokoru.logging import get_logger
from kokoru.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

BLACKLIST_PREFIX = "token:blacklist:"
REFRESH_PREFIX = "token:refresh:"
SESSION_PREFIX = "session:"

DEFAULT_EXPIRY_SECONDS = 3600

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_DURATION_RE = re.compile(r"^(\d+)([smhdw])$")


def normalize_expiry(value: Any) -> int:
    """Convert an expiry setting to seconds.

    Pure digits are seconds, ``<n><unit>`` uses s/m/h/d/w. Anything else
    falls back to one hour with a warning.
    """
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    text = str(value).strip() if value is not None else ""
    if text.isdigit() and int(text) > 0:
        return int(text)
    match = _DURATION_RE.match(text)
    if match and int(match.group(1)) > 0:
        return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    logger.warning("token_expiry_invalid", value=text, default_seconds=DEFAULT_EXPIRY_SECONDS)
    return DEFAULT_EXPIRY_SECONDS


def hash_token(token: str) -> str:
    """Lowercase hex SHA-256; the only form in which one-time tokens are stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_random_token() -> str:
    return secrets.token_hex(32)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


@dataclass
class TokenPayload:
    identity_id: str
    session_id: str
    token_type: str
    issued_at: int
    expires_at: int
    email: str = ""


class TokenService:
    """Signs and checks access/refresh tokens and tracks revocation state.

    Access and refresh tokens are compact HS256 JWTs signed with separate
    secrets. Session and refresh-token bookkeeping in the cache is scheduled
    as background tasks: issuing a token never waits on, or fails because
    of, the cache. ``drain`` waits for that bookkeeping to settle.
    """

    def __init__(
        self,
        cache,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not settings.jwt_access_secret or not settings.jwt_refresh_secret:
            raise ValueError("access and refresh token secrets are required")
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._access_secret = settings.jwt_access_secret.encode()
        self._refresh_secret = settings.jwt_refresh_secret.encode()
        self.access_ttl = normalize_expiry(settings.jwt_access_expiry)
        self.refresh_ttl = normalize_expiry(settings.jwt_refresh_expiry)
        self._pending: Set[asyncio.Task] = set()

    # -- encoding ---------------------------------------------------------

    @staticmethod
    def _sign(secret: bytes, signing_input: str) -> str:
        return _encode_segment(hmac.new(secret, signing_input.encode(), hashlib.sha256).digest())

    def _encode(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(secret, signing_input)}"

    @staticmethod
    def decode_unverified(token: str) -> Optional[dict[str, Any]]:
        """Structural decode with no signature or claim checks."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(_decode_segment(parts[1]))
        except (ValueError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _decode(
        self, token: str, secret: bytes, *, expected_type: str, check_audience: bool
    ) -> dict[str, Any]:
        label = "Access" if expected_type == "access" else "Refresh"
        invalid = InvalidTokenError(f"Invalid {label.lower()} token")
        if not token or not isinstance(token, str):
            raise invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid from None

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise invalid

        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise invalid
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid

        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        if check_audience:
            aud = payload.get("aud")
            if isinstance(aud, list):
                valid_aud = self.settings.jwt_audience in aud
            else:
                valid_aud = aud == self.settings.jwt_audience
            if not valid_aud:
                raise invalid
        if payload.get("type") != expected_type:
            raise invalid
        for claim in ("userId", "sessionId", "iat", "exp"):
            if payload.get(claim) in (None, ""):
                raise invalid
        try:
            exp_ts = float(payload["exp"])
        except (TypeError, ValueError):
            raise invalid from None
        if exp_ts <= self._clock():
            raise TokenExpiredError(f"{label} token has expired")
        return payload

    # -- issuance ---------------------------------------------------------

    def _claims(self, identity_id: str, session_id: str, token_type: str, ttl: int) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "userId": identity_id,
            "sessionId": session_id,
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
            "iss": self.settings.jwt_issuer,
            "sub": str(identity_id),
        }

    def generate_access_token(self, identity_id: str, email: str) -> str:
        if not identity_id:
            raise InvalidTokenError("userId is required in payload")
        session_id = secrets.token_hex(32)
        payload = self._claims(identity_id, session_id, "access", self.access_ttl)
        payload["email"] = email
        payload["aud"] = self.settings.jwt_audience
        token = self._encode(payload, self._access_secret)
        self._schedule(
            lambda: self._store_session(session_id, identity_id, email),
            "session_store_failed",
        )
        return token

    def generate_refresh_token(self, identity_id: str, email: str = "") -> str:
        if not identity_id:
            raise InvalidTokenError("userId is required in payload")
        session_id = secrets.token_hex(32)
        payload = self._claims(identity_id, session_id, "refresh", self.refresh_ttl)
        token = self._encode(payload, self._refresh_secret)
        self._schedule(
            lambda: self._store_refresh(session_id, identity_id, email, token),
            "refresh_token_store_failed",
        )
        return token

    async def _store_session(self, session_id: str, identity_id: str, email: str) -> None:
        record = json.dumps(
            {
                "userId": identity_id,
                "email": email,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
        )
        await self.cache.setex(f"{SESSION_PREFIX}{session_id}", self.refresh_ttl, record)

    async def _store_refresh(
        self, session_id: str, identity_id: str, email: str, token: str
    ) -> None:
        # The session record lets revoke_all_user_tokens find this refresh shadow
        await self._store_session(session_id, identity_id, email)
        await self.cache.setex(f"{REFRESH_PREFIX}{session_id}", self.refresh_ttl, token)

    def _schedule(
        self, factory: Callable[[], Coroutine[Any, Any, None]], failure_event: str
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("token_bookkeeping_skipped", reason="no_running_loop", event_name=failure_event)
            return
        task = loop.create_task(factory())
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(failure_event, error_type=type(exc).__name__, error=str(exc))

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for outstanding session/refresh bookkeeping writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- verification -----------------------------------------------------

    async def verify_access_token(self, token: str) -> TokenPayload:
        payload = self._decode(token, self._access_secret, expected_type="access", check_audience=True)
        if await self.is_token_blacklisted(token, fail_open=True):
            logger.warning("blacklisted_token_used", user_id=payload.get("userId"))
            if self.settings.enforce_token_blacklist:
                raise InvalidTokenError("Token has been revoked")
        return TokenPayload(
            identity_id=str(payload["userId"]),
            email=str(payload.get("email") or ""),
            session_id=str(payload["sessionId"]),
            token_type="access",
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    def verify_refresh_token(self, token: str) -> TokenPayload:
        payload = self._decode(token, self._refresh_secret, expected_type="refresh", check_audience=False)
        # Email is left empty; callers re-read the identity from the store
        return TokenPayload(
            identity_id=str(payload["userId"]),
            session_id=str(payload["sessionId"]),
            token_type="refresh",
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    # -- revocation -------------------------------------------------------

    async def is_token_blacklisted(self, token: str, *, fail_open: bool = False) -> bool:
        try:
            return await self.cache.exists(f"{BLACKLIST_PREFIX}{hash_token(token)}")
        except Exception as exc:
            if not fail_open:
                raise
            logger.warning("token_blacklist_check_failed", error_type=type(exc).__name__, error=str(exc))
            return False

    async def revoke_token(self, token: str) -> bool:
        """Blacklist ``token`` until its natural expiry.

        Returns False when the token cannot be decoded or has already expired.
        """
        decoded = self.decode_unverified(token)
        if not decoded:
            return False
        try:
            exp = int(float(decoded.get("exp")))
        except (TypeError, ValueError):
            return False
        ttl = exp - int(self._clock())
        if ttl <= 0:
            return False
        try:
            await self.cache.setex(f"{BLACKLIST_PREFIX}{hash_token(token)}", ttl, "1")
        except Exception as exc:
            logger.error("token_revoke_failed", error_type=type(exc).__name__, error=str(exc))
            raise InvalidTokenError("Failed to revoke token") from exc
        logger.info("token_revoked", ttl_seconds=ttl)
        return True

    async def revoke_all_user_tokens(self, identity_id: str) -> int:
        """Drop every session and refresh shadow belonging to ``identity_id``.

        This walks all ``session:*`` keys, so cost grows with the number of
        live sessions across all users.
        """
        removed = 0
        try:
            async for key in self.cache.scan_iter(f"{SESSION_PREFIX}*"):
                raw = await self.cache.get(key)
                if not raw:
                    continue
                try:
                    record = json.loads(raw)
                except ValueError:
                    logger.warning("session_record_malformed", key=key)
                    continue
                if not isinstance(record, dict) or record.get("userId") != identity_id:
                    continue
                session_id = key[len(SESSION_PREFIX):]
                await self.cache.delete(key, f"{REFRESH_PREFIX}{session_id}")
                removed += 1
        except Exception as exc:
            logger.error(
                "revoke_user_tokens_failed",
                user_id=identity_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InvalidTokenError("Failed to revoke all user tokens") from exc
        logger.info("user_tokens_revoked", user_id=identity_id, sessions=removed)
        return removed

    async def get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        raw = await self.cache.get(f"{SESSION_PREFIX}{session_id}")
        if not raw:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            return None
        return record if isinstance(record, dict) else None

    async def get_refresh_shadow(self, session_id: str) -> Optional[str]:
        return await self.cache.get(f"{REFRESH_PREFIX}{session_id}")

    generate_random_token = staticmethod(generate_random_token)
    hash_token = staticmethod(hash_token)
