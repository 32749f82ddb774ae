from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from kokoru.config import Settings
from kokoru.logging import get_logger
from kokoru.service.email import EmailService
from kokoru.service.errors import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ServiceError,
    TokenExpiredError,
    ValidationError,
)
from kokoru.service.identities import (
    IdentityGateway,
    normalize_email,
    validate_identity_id,
)
from kokoru.service.notifications import EmailDispatcher, EmailJob
from kokoru.service.oauth import FEDERATION_FAILED, GoogleOAuthService
from kokoru.service.passwords import PasswordService
from kokoru.service.rate_limiter import RateLimiterService
from kokoru.service.tokens import TokenService, generate_random_token, hash_token
from kokoru.storage.models import AuthProvider, Identity

logger = get_logger(__name__)

MSG_INVALID_CREDENTIALS = "Invalid credentials"
MSG_EMAIL_EXISTS = "Email already exists"
MSG_ACCOUNT_LOCKED = "Account is temporarily locked due to too many failed login attempts"
MSG_GOOGLE_ACCOUNT = "This account was created with Google. Please sign in with Google."
MSG_LOCAL_ACCOUNT = (
    "This account uses password sign-in. Please log in with your email and password."
)
MSG_INVALID_TOKEN = "Invalid or expired token"
MSG_TOKEN_EXPIRED = "Token has expired"
MSG_ALREADY_VERIFIED = "Email is already verified"
MSG_RESEND_TOO_SOON = "Please wait before requesting another verification email"
MSG_EMAIL_NOT_VERIFIED = "Email address is not verified"
MSG_USER_NOT_FOUND = "User not found"

# Fields an administrator may set through bulk updates
BULK_UPDATABLE_FIELDS = frozenset(
    {
        "is_email_verified",
        "has_completed_onboarding",
        "onboarding_step",
        "login_attempts",
        "locked_until",
    }
)


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class SanitizedIdentity:
    """Identity fields that are safe to hand to any caller."""

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


@dataclass
class AuthResult:
    user: SanitizedIdentity
    tokens: AuthTokens
    requires_onboarding: bool
    onboarding_step: int
    is_new_user: bool = False


@dataclass
class CurrentUser:
    user: SanitizedIdentity
    requires_onboarding: bool
    onboarding_step: int


@dataclass
class AuthContext:
    identity_id: str
    email: str
    session_id: str
    is_email_verified: bool


def sanitize_identity(identity: Identity) -> SanitizedIdentity:
    return SanitizedIdentity(
        id=identity.id,
        email=identity.email,
        first_name=identity.first_name or "",
        last_name=identity.last_name or "",
        auth_provider=AuthProvider(identity.auth_provider).value,
        is_email_verified=identity.is_email_verified,
        has_logged_in=identity.has_logged_in,
        has_completed_onboarding=identity.has_completed_onboarding,
        onboarding_step=identity.onboarding_step or 0,
        created_at=identity.created_at,
        last_login_at=identity.last_login_at,
    )


class AuthService:
    """Registration, login, token refresh and account recovery flows.

    Owns the failure policy across collaborators: store and crypto failures
    surface as ``ServiceError`` kinds, while notification emails and session
    bookkeeping are side effects that only ever log.
    """

    def __init__(
        self,
        identities: IdentityGateway,
        tokens: TokenService,
        passwords: PasswordService,
        rate_limiter: RateLimiterService,
        oauth: GoogleOAuthService,
        email: EmailService,
        dispatcher: EmailDispatcher,
        settings: Settings,
    ) -> None:
        self.identities = identities
        self.tokens = tokens
        self.passwords = passwords
        self.rate_limiter = rate_limiter
        self.oauth = oauth
        self.email = email
        self.dispatcher = dispatcher
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- helpers ----------------------------------------------------------

    def _issue_tokens(self, identity: Identity) -> AuthTokens:
        return AuthTokens(
            access_token=self.tokens.generate_access_token(identity.id, identity.email),
            refresh_token=self.tokens.generate_refresh_token(identity.id, identity.email),
            expires_in=self.tokens.access_ttl,
        )

    def _result(self, identity: Identity, tokens: AuthTokens, *, is_new_user: bool = False) -> AuthResult:
        return AuthResult(
            user=sanitize_identity(identity),
            tokens=tokens,
            requires_onboarding=not identity.has_completed_onboarding,
            onboarding_step=identity.onboarding_step or 0,
            is_new_user=is_new_user,
        )

    def _notify(self, action: str, identity: Identity, *args: Any) -> None:
        self.dispatcher.submit(
            EmailJob(
                action=action,
                args=(identity.email, identity.first_name, *args),
                user_id=identity.id,
            )
        )

    async def _require_identity(self, identity_id: str) -> Identity:
        identity = await self.identities.call("get_identity", validate_identity_id(identity_id))
        if identity is None:
            raise NotFoundError(MSG_USER_NOT_FOUND)
        return identity

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.passwords.hash, password)

    def _check_strength(self, password: str) -> None:
        strength = self.passwords.validate_strength(password)
        if not strength.is_valid:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"errors": strength.errors, "score": strength.score},
            )

    def _verification_expiry(self) -> datetime:
        return self._now() + timedelta(hours=self.settings.verification_token_ttl_hours)

    def _reset_expiry(self) -> datetime:
        return self._now() + timedelta(minutes=self.settings.reset_token_ttl_minutes)

    async def _find_by_one_time_token(self, token: str, kind: str) -> Identity:
        """Resolve a verification or reset token.

        The store lookup already filters out expired rows, so a miss is an
        ``InvalidTokenError``. The expiry is checked again on the match and
        reported as ``TokenExpiredError`` when it lapsed in between.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError(MSG_INVALID_TOKEN)
        token_hash = hash_token(token)
        if kind == "verification":
            identity = await self.identities.call("get_identity_by_verification_token", token_hash)
            expires = identity.email_verification_expires if identity else None
        else:
            identity = await self.identities.call("get_identity_by_reset_token", token_hash)
            expires = identity.password_reset_expires if identity else None
        if identity is None:
            raise InvalidTokenError(MSG_INVALID_TOKEN)
        if expires is None or expires <= self._now():
            raise TokenExpiredError(MSG_TOKEN_EXPIRED)
        return identity

    # -- registration and login ------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> AuthResult:
        email = normalize_email(email)
        self._check_strength(password)
        if await self.identities.find_by_email(email) is not None:
            raise ConflictError(MSG_EMAIL_EXISTS)

        password_hash = await self._hash_password(password)
        verification_token = generate_random_token()
        candidate = Identity.new(
            email,
            first_name=(first_name or "").strip(),
            last_name=(last_name or "").strip(),
            password_hash=password_hash,
            auth_provider=AuthProvider.LOCAL,
            email_verification_token=hash_token(verification_token),
            email_verification_expires=self._verification_expiry(),
            onboarding_step=0,
        )
        identity = await self.identities.call("create_identity", candidate)

        tokens = self._issue_tokens(identity)
        identity = await self.identities.call(
            "update_identity",
            identity.id,
            refresh_token=tokens.refresh_token,
            last_login_at=self._now(),
        ) or identity
        self._notify("send_verification_email", identity, verification_token)
        self.logger.info("identity_registered", user_id=identity.id)
        return self._result(identity, tokens)

    async def login(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        identity = await self.identities.find_by_email(email)
        if identity is None:
            raise AuthenticationError(MSG_INVALID_CREDENTIALS)
        if identity.auth_provider == AuthProvider.GOOGLE:
            raise AuthenticationError(MSG_GOOGLE_ACCOUNT)

        now = self._now()
        if identity.is_locked(now):
            minutes = math.ceil((identity.locked_until - now).total_seconds() / 60)
            raise AccountLockedError(
                f"Account locked. Try again in {minutes} minutes.",
                detail={"locked_until": identity.locked_until.isoformat()},
            )
        if not identity.password_hash:
            raise AuthenticationError(MSG_INVALID_CREDENTIALS)

        valid = await asyncio.to_thread(self.passwords.verify, identity.password_hash, password)
        if not valid:
            await self._handle_failed_login(identity)
            raise AuthenticationError(MSG_INVALID_CREDENTIALS)

        tokens = self._issue_tokens(identity)
        updates: Dict[str, Any] = {
            "last_login_at": now,
            "login_attempts": 0,
            "locked_until": None,
            "refresh_token": tokens.refresh_token,
            "has_logged_in": True,
        }
        if self.passwords.needs_rehash(identity.password_hash):
            updates["password_hash"] = await self._hash_password(password)
            self.logger.info("password_rehashed", user_id=identity.id)
        updated = await self.identities.call("update_identity", identity.id, **updates)
        await self._reset_rate_limit(identity.id)

        if not identity.has_logged_in and identity.is_email_verified:
            self._notify("send_welcome_email", identity)
        self.logger.info("login_succeeded", user_id=identity.id)
        return self._result(updated or identity, tokens)

    async def _handle_failed_login(self, identity: Identity) -> None:
        attempts = await self.identities.call("increment_login_attempts", identity.id)
        try:
            await self.rate_limiter.record_failed_login(identity.id)
            status = await self.rate_limiter.check_login_attempts(identity.id)
        except Exception as exc:
            self.logger.error(
                "login_rate_limit_unavailable",
                user_id=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            # Fall back to the persisted counter with a fresh window
            if attempts < self.rate_limiter.max_login_attempts:
                return
            locked_until = self._now() + timedelta(seconds=self.rate_limiter.login_window_seconds)
        else:
            if status.can_attempt or status.locked_until is None:
                self.logger.info(
                    "login_failed", user_id=identity.id, attempts_remaining=status.attempts_remaining
                )
                return
            locked_until = status.locked_until

        await self.identities.call("lock_identity", identity.id, locked_until)
        self.logger.warning("account_locked", user_id=identity.id, locked_until=locked_until.isoformat())
        self._notify(
            "send_account_locked_email",
            identity,
            "too many failed login attempts",
        )
        raise AccountLockedError(
            MSG_ACCOUNT_LOCKED, detail={"locked_until": locked_until.isoformat()}
        )

    async def _reset_rate_limit(self, identity_id: str) -> None:
        try:
            await self.rate_limiter.reset_login_attempts(identity_id)
        except Exception as exc:
            self.logger.warning(
                "login_rate_limit_reset_failed", user_id=identity_id, error=str(exc)
            )

    # -- email verification and password recovery ------------------------

    async def verify_email(self, token: str) -> SanitizedIdentity:
        identity = await self._find_by_one_time_token(token, "verification")
        updated = await self.identities.call(
            "update_identity",
            identity.id,
            is_email_verified=True,
            email_verification_token=None,
            email_verification_expires=None,
        )
        if identity.has_logged_in:
            self._notify("send_welcome_email", identity)
        self.logger.info("email_verified", user_id=identity.id)
        return sanitize_identity(updated or identity)

    async def forgot_password(self, email: str) -> None:
        """Start a reset. Returns the same way whether or not the email exists."""
        email = normalize_email(email)
        try:
            identity = await self.identities.find_by_email(email)
            if identity is None:
                return
            if identity.auth_provider != AuthProvider.LOCAL:
                # Google identities never get a password
                self.logger.info("password_reset_skipped", user_id=identity.id, reason="federated")
                return
            reset_token = generate_random_token()
            await self.identities.call(
                "update_identity",
                identity.id,
                password_reset_token=hash_token(reset_token),
                password_reset_expires=self._reset_expiry(),
            )
            self._notify("send_password_reset_email", identity, reset_token)
            self.logger.info("password_reset_requested", user_id=identity.id)
        except ServiceError as exc:
            self.logger.error("password_reset_request_failed", error_type=type(exc).__name__, error=exc.message)

    async def reset_password(self, token: str, new_password: str) -> None:
        identity = await self._find_by_one_time_token(token, "reset")
        self._check_strength(new_password)
        password_hash = await self._hash_password(new_password)
        await self.identities.call(
            "update_identity",
            identity.id,
            password_hash=password_hash,
            password_reset_token=None,
            password_reset_expires=None,
            password_changed_at=self._now(),
            login_attempts=0,
            locked_until=None,
        )
        await self._reset_rate_limit(identity.id)
        try:
            await self.revoke_all_sessions(identity.id)
        except InvalidTokenError:
            self.logger.warning("password_reset_session_revoke_failed", user_id=identity.id)
        self._notify("send_password_changed_email", identity)
        self.logger.info("password_reset_completed", user_id=identity.id)

    async def resend_verification_email(self, identity_id: str) -> None:
        identity = await self._require_identity(identity_id)
        if identity.is_email_verified:
            raise ConflictError(MSG_ALREADY_VERIFIED)
        status = await self.rate_limiter.check_email_resend(identity.id)
        if not status.can_resend:
            detail = {}
            if status.next_allowed_at is not None:
                detail["next_allowed_at"] = status.next_allowed_at.isoformat()
            raise RateLimitError(MSG_RESEND_TOO_SOON, detail=detail)

        verification_token = generate_random_token()
        await self.identities.call(
            "update_identity",
            identity.id,
            email_verification_token=hash_token(verification_token),
            email_verification_expires=self._verification_expiry(),
        )
        try:
            await asyncio.to_thread(
                self.email.send_verification_email,
                identity.email,
                identity.first_name,
                verification_token,
            )
        except Exception as exc:
            self.logger.error(
                "verification_email_failed",
                user_id=identity.id,
                error_type=type(exc).__name__,
            )
            raise ServerError("Failed to send verification email") from exc

    # -- sessions ---------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        if not refresh_token:
            raise InvalidTokenError(MSG_INVALID_TOKEN)
        payload = self.tokens.verify_refresh_token(refresh_token)
        identity = await self.identities.call("get_identity_by_refresh_token", refresh_token)
        if identity is None or identity.id != payload.identity_id:
            self.logger.warning("refresh_token_mismatch", user_id=payload.identity_id)
            raise InvalidTokenError(MSG_INVALID_TOKEN)
        tokens = self._issue_tokens(identity)
        await self.identities.call("update_identity", identity.id, refresh_token=tokens.refresh_token)
        return tokens

    async def logout(self, identity_id: str, access_token: Optional[str] = None) -> None:
        """Clear the stored refresh token.

        Outstanding access tokens stay valid until expiry unless
        ``access_token`` is given, in which case it is also blacklisted.
        """
        identity_id = validate_identity_id(identity_id)
        await self.identities.call("update_identity", identity_id, refresh_token=None)
        if access_token:
            try:
                await self.tokens.revoke_token(access_token)
            except InvalidTokenError:
                self.logger.warning("logout_access_token_revoke_failed", user_id=identity_id)
        self.logger.info("logout", user_id=identity_id)

    async def revoke_all_sessions(self, identity_id: str) -> int:
        """End every session of ``identity_id``.

        The stored refresh slot is cleared first so outstanding refresh tokens
        fail their identity lookup even if the cache sweep errors out.
        Returns the number of session records removed.
        """
        identity_id = validate_identity_id(identity_id)
        await self.identities.call("update_identity", identity_id, refresh_token=None)
        removed = await self.tokens.revoke_all_user_tokens(identity_id)
        self.logger.info("sessions_revoked", user_id=identity_id, sessions=removed)
        return removed

    async def get_current_user(self, identity_id: str) -> CurrentUser:
        identity = await self._require_identity(identity_id)
        return CurrentUser(
            user=sanitize_identity(identity),
            requires_onboarding=not identity.has_completed_onboarding,
            onboarding_step=identity.onboarding_step or 0,
        )

    async def authenticate_access_token(self, token: str) -> AuthContext:
        """Resolve a bearer token to the live identity behind it."""
        payload = await self.tokens.verify_access_token(token)
        identity = await self.identities.call("get_identity", payload.identity_id)
        if identity is None:
            raise AuthenticationError(MSG_USER_NOT_FOUND)
        return AuthContext(
            identity_id=identity.id,
            email=identity.email,
            session_id=payload.session_id,
            is_email_verified=identity.is_email_verified,
        )

    def require_verified_email(self, ctx: AuthContext) -> AuthContext:
        if not ctx.is_email_verified:
            raise AuthorizationError(MSG_EMAIL_NOT_VERIFIED)
        return ctx

    # -- federation -------------------------------------------------------

    async def authenticate_with_google(self, code: str, state: Optional[str]) -> AuthResult:
        """Finish Google sign-in.

        ``state`` must be one issued by ``GoogleOAuthService.issue_state`` and
        is spent here whether or not the exchange succeeds.
        """
        if not await self.oauth.consume_state(state):
            self.logger.warning("google_oauth_state_rejected")
            raise AuthenticationError(FEDERATION_FAILED)
        profile = await self.oauth.process_google_code(code)
        identity, is_new_user = await self.oauth.find_or_create_google_user(profile)
        if identity.auth_provider != AuthProvider.GOOGLE:
            self.logger.warning("google_login_local_account", user_id=identity.id)
            raise AuthenticationError(MSG_LOCAL_ACCOUNT)
        tokens = self._issue_tokens(identity)
        updated = await self.identities.call(
            "update_identity",
            identity.id,
            refresh_token=tokens.refresh_token,
            last_login_at=self._now(),
            has_logged_in=True,
        )
        self.logger.info("google_login_succeeded", user_id=identity.id, is_new_user=is_new_user)
        return self._result(updated or identity, tokens, is_new_user=is_new_user)

    # -- administration ---------------------------------------------------

    async def unlock_account(self, identity_id: str) -> None:
        identity = await self._require_identity(identity_id)
        await self.identities.call("reset_login_attempts", identity.id)
        await self._reset_rate_limit(identity.id)
        self.logger.info("account_unlocked", user_id=identity.id)

    async def bulk_update_identities(self, identity_ids: Sequence[str], **fields) -> int:
        limit = self.settings.bulk_update_limit
        if not identity_ids:
            return 0
        if len(identity_ids) > limit:
            raise ValidationError(f"Cannot update more than {limit} users at once")
        disallowed = set(fields) - BULK_UPDATABLE_FIELDS
        if disallowed or not fields:
            raise ValidationError(
                "Unsupported bulk update fields", detail={"fields": sorted(disallowed)}
            )
        ids = [validate_identity_id(i) for i in identity_ids]
        count = await self.identities.call("bulk_update_identities", ids, **fields)
        self.logger.info("identities_bulk_updated", count=count, fields=sorted(fields))
        return count

    async def get_identity_stats(self) -> Dict[str, int]:
        return await self.identities.call("get_identity_stats")
