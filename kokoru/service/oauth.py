from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Optional, Tuple
from urllib.parse import urlencode

import httpx
import jwt

from kokoru.config import Settings
from kokoru.logging import get_logger
from kokoru.service.errors import AuthenticationError, ServerError
from kokoru.service.identities import IdentityGateway, normalize_email
from kokoru.storage.models import AuthProvider, Identity

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})
GOOGLE_SCOPE = "openid email profile"
MAX_GOOGLE_ID_LENGTH = 100
MAX_STATE_LENGTH = 128
OAUTH_STATE_PREFIX = "oauth_state:"

FEDERATION_FAILED = "Google authentication failed"


@dataclass
class GoogleProfile:
    provider_user_id: str
    email: str
    email_verified: bool = False
    given_name: str = ""
    family_name: str = ""
    name: str = ""
    avatar_url: Optional[str] = None


class _FederationFailure(Exception):
    """Internal marker carrying the log event for a failed exchange."""

    def __init__(self, event: str, **context: Any) -> None:
        super().__init__(event)
        self.event = event
        self.context = context


class GoogleOAuthService:
    """Google sign-in: code exchange, ID token verification, identity mapping.

    The redirect URI always comes from ``settings.google_redirect_uri`` so the
    consent URL and the code exchange cannot disagree.
    """

    def __init__(
        self,
        identities: IdentityGateway,
        settings: Settings,
        *,
        cache: Optional[Any] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        jwk_client: Optional[Any] = None,
    ) -> None:
        self.identities = identities
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._jwk_client = jwk_client

    @property
    def configured(self) -> bool:
        return bool(
            self.settings.google_client_id
            and self.settings.google_client_secret
            and self.settings.google_redirect_uri
        )

    def _jwks(self) -> Any:
        if self._jwk_client is None:
            self._jwk_client = jwt.PyJWKClient(GOOGLE_CERTS_URL, cache_keys=True)
        return self._jwk_client

    def authorization_url(self, state: str) -> str:
        if not self.configured:
            logger.warning("google_oauth_not_configured")
            raise AuthenticationError(FEDERATION_FAILED)
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def issue_state(self) -> str:
        """Mint a single-use ``state`` for the consent redirect."""
        if self.cache is None:
            raise ServerError("Google sign-in is not configured")
        state = secrets.token_urlsafe(24)
        await self.cache.setex(
            f"{OAUTH_STATE_PREFIX}{state}", self.settings.google_state_ttl_seconds, "1"
        )
        return state

    async def consume_state(self, state: Optional[str]) -> bool:
        """True once for an issued, unexpired ``state``; the entry is deleted on use."""
        if self.cache is None or not isinstance(state, str):
            return False
        if not state or len(state) > MAX_STATE_LENGTH:
            return False
        try:
            return await self.cache.delete(f"{OAUTH_STATE_PREFIX}{state}") > 0
        except Exception as exc:
            logger.error("google_oauth_state_lookup_failed", error_type=type(exc).__name__)
            return False

    async def process_google_code(self, code: str) -> GoogleProfile:
        """Exchange ``code`` and return the verified profile.

        Every failure is logged with its cause and re-raised as the same
        generic ``AuthenticationError``.
        """
        try:
            if not code or not isinstance(code, str):
                raise _FederationFailure("google_code_missing")
            if not self.configured:
                raise _FederationFailure("google_oauth_not_configured")
            id_token = await self._exchange_code(code)
            claims = await asyncio.to_thread(self._verify_id_token, id_token)
            profile = self._profile_from_claims(claims)
        except _FederationFailure as failure:
            logger.error(failure.event, **failure.context)
            raise AuthenticationError(FEDERATION_FAILED) from None
        except Exception as exc:
            logger.error(
                "google_oauth_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise AuthenticationError(FEDERATION_FAILED) from None
        logger.info("google_oauth_profile_verified", provider_uid=profile.provider_user_id)
        return profile

    async def _exchange_code(self, code: str) -> str:
        form = {
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": self.settings.google_redirect_uri,
            "grant_type": "authorization_code",
        }
        async with httpx.AsyncClient(
            timeout=self.settings.google_http_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
        try:
            body = response.json()
        except ValueError:
            raise _FederationFailure(
                "google_token_parse_error", status_code=response.status_code
            ) from None
        if response.status_code >= 400:
            detail = None
            if isinstance(body, dict):
                detail = body.get("error_description") or body.get("error")
            raise _FederationFailure(
                "google_token_exchange_failed",
                status_code=response.status_code,
                detail=detail,
            )
        id_token = body.get("id_token") if isinstance(body, dict) else None
        if not id_token:
            raise _FederationFailure("google_id_token_missing")
        return id_token

    def _verify_id_token(self, id_token: str) -> dict[str, Any]:
        try:
            signing_key = self._jwks().get_signing_key_from_jwt(id_token)
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.settings.google_client_id,
                options={"require": ["exp", "iat", "iss", "sub", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise _FederationFailure("google_id_token_expired") from None
        except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
            raise _FederationFailure("google_id_token_invalid", error=str(exc)) from None
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise _FederationFailure("google_id_token_bad_issuer", issuer=claims.get("iss"))
        return claims

    @staticmethod
    def _profile_from_claims(claims: dict[str, Any]) -> GoogleProfile:
        email = claims.get("email")
        if not email:
            raise _FederationFailure("google_profile_missing_email")
        subject = str(claims["sub"])
        if not subject or len(subject) > MAX_GOOGLE_ID_LENGTH:
            raise _FederationFailure("google_subject_invalid", length=len(subject))
        given = claims.get("given_name") or ""
        family = claims.get("family_name") or ""
        return GoogleProfile(
            provider_user_id=subject,
            email=normalize_email(email),
            email_verified=bool(claims.get("email_verified", False)),
            given_name=given,
            family_name=family,
            name=claims.get("name") or f"{given} {family}".strip(),
            avatar_url=claims.get("picture"),
        )

    async def find_or_create_google_user(self, profile: GoogleProfile) -> Tuple[Identity, bool]:
        """Map a verified profile onto a local identity.

        Returns ``(identity, is_new_user)``. An existing google identity with
        no google id gets it backfilled. Local identities are returned
        untouched; the caller decides how to reject them.
        """
        identity = await self.identities.find_by_email(profile.email)
        if identity is None:
            candidate = Identity.new(
                profile.email,
                first_name=profile.given_name,
                last_name=profile.family_name,
                auth_provider=AuthProvider.GOOGLE,
                google_id=profile.provider_user_id,
                is_email_verified=profile.email_verified,
                profile_image_url=profile.avatar_url,
                onboarding_step=0,
            )
            created = await self.identities.call("create_identity", candidate)
            logger.info("google_identity_created", user_id=created.id)
            return created, True

        if identity.auth_provider == AuthProvider.GOOGLE and not identity.google_id:
            updated = await self.identities.call(
                "update_identity", identity.id, google_id=profile.provider_user_id
            )
            if updated is not None:
                identity = updated
            logger.info("google_id_backfilled", user_id=identity.id)
        return identity, False
