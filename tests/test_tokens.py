"""Tests for token issuance, verification and revocation."""

import base64
import json

import pytest

from kokoru.service.errors import InvalidTokenError, TokenExpiredError
from kokoru.service.tokens import (
    BLACKLIST_PREFIX,
    REFRESH_PREFIX,
    SESSION_PREFIX,
    TokenService,
    hash_token,
    normalize_expiry,
)

IDENTITY_ID = "0b5f6c1e-8f0a-4f3e-9d1c-2a7b3c4d5e6f"


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    return TokenService.decode_unverified(token)


class TestNormalizeExpiry:
    @pytest.mark.parametrize(
        "value,expected",
        [("15m", 900), ("7d", 604800), ("2h", 7200), ("30s", 30), ("1w", 604800), ("3600", 3600), (120, 120)],
    )
    def test_valid_forms(self, value, expected):
        assert normalize_expiry(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "15x", "0m", None, -5])
    def test_invalid_forms_fall_back_to_one_hour(self, value):
        assert normalize_expiry(value) == 3600


class TestIssuance:
    def test_access_token_claims(self, tokens, settings, clock):
        token = tokens.generate_access_token(IDENTITY_ID, "gardener@example.com")
        claims = _payload(token)

        assert claims["userId"] == IDENTITY_ID
        assert claims["sub"] == IDENTITY_ID
        assert claims["type"] == "access"
        assert claims["email"] == "gardener@example.com"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] - claims["iat"] == 900
        assert len(claims["sessionId"]) == 64

    def test_refresh_token_has_no_audience(self, tokens):
        claims = _payload(tokens.generate_refresh_token(IDENTITY_ID))

        assert claims["type"] == "refresh"
        assert "aud" not in claims
        assert claims["exp"] - claims["iat"] == 7 * 86400

    def test_every_token_gets_a_fresh_session(self, tokens):
        first = _payload(tokens.generate_access_token(IDENTITY_ID, "a@example.com"))
        second = _payload(tokens.generate_access_token(IDENTITY_ID, "a@example.com"))

        assert first["sessionId"] != second["sessionId"]

    def test_missing_identity_is_rejected(self, tokens):
        with pytest.raises(InvalidTokenError):
            tokens.generate_access_token("", "a@example.com")

    async def test_bookkeeping_records_session_and_refresh_shadow(self, tokens):
        access = tokens.generate_access_token(IDENTITY_ID, "a@example.com")
        refresh = tokens.generate_refresh_token(IDENTITY_ID, "a@example.com")
        await tokens.drain()

        access_session = await tokens.get_session(_payload(access)["sessionId"])
        refresh_session_id = _payload(refresh)["sessionId"]

        assert access_session["userId"] == IDENTITY_ID
        assert (await tokens.get_session(refresh_session_id))["userId"] == IDENTITY_ID
        assert await tokens.get_refresh_shadow(refresh_session_id) == refresh

    def test_issuance_without_event_loop_still_returns_token(self, tokens):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")

        assert token.count(".") == 2

    def test_distinct_secrets_are_required(self, cache, settings):
        broken = settings.model_copy(update={"jwt_refresh_secret": None})

        with pytest.raises(ValueError):
            TokenService(cache, broken)


class TestVerification:
    async def test_access_token_round_trip(self, tokens):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")

        payload = await tokens.verify_access_token(token)

        assert payload.identity_id == IDENTITY_ID
        assert payload.email == "a@example.com"
        assert payload.token_type == "access"

    def test_refresh_token_round_trip(self, tokens):
        payload = tokens.verify_refresh_token(tokens.generate_refresh_token(IDENTITY_ID))

        assert payload.identity_id == IDENTITY_ID
        assert payload.email == ""

    async def test_access_and_refresh_are_not_interchangeable(self, tokens):
        access = tokens.generate_access_token(IDENTITY_ID, "a@example.com")
        refresh = tokens.generate_refresh_token(IDENTITY_ID)

        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(refresh)
        with pytest.raises(InvalidTokenError):
            tokens.verify_refresh_token(access)

    async def test_expired_access_token(self, tokens, clock):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")
        clock.advance(901)

        with pytest.raises(TokenExpiredError):
            await tokens.verify_access_token(token)

    def test_expired_refresh_token(self, tokens, clock):
        token = tokens.generate_refresh_token(IDENTITY_ID)
        clock.advance(7 * 86400 + 1)

        with pytest.raises(TokenExpiredError):
            tokens.verify_refresh_token(token)

    async def test_tampered_payload_is_rejected(self, tokens):
        header, payload, signature = tokens.generate_access_token(IDENTITY_ID, "a@example.com").split(".")
        claims = _payload(f"{header}.{payload}.{signature}")
        claims["userId"] = "someone-else"

        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(f"{header}.{_b64(claims)}.{signature}")

    async def test_alg_none_is_rejected(self, tokens):
        _, payload, _ = tokens.generate_access_token(IDENTITY_ID, "a@example.com").split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(forged)

    async def test_wrong_audience_is_rejected(self, cache, settings, clock):
        other = TokenService(cache, settings.model_copy(update={"jwt_audience": "elsewhere"}), clock=clock)
        token = other.generate_access_token(IDENTITY_ID, "a@example.com")
        verifier = TokenService(cache, settings, clock=clock)

        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
    async def test_malformed_tokens(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(garbage)


class TestRevocation:
    async def test_revoked_token_is_rejected(self, tokens):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")

        assert await tokens.revoke_token(token) is True
        assert await tokens.is_token_blacklisted(token) is True
        with pytest.raises(InvalidTokenError):
            await tokens.verify_access_token(token)

    async def test_blacklist_entry_expires_with_token(self, tokens, cache):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")
        await tokens.revoke_token(token)

        ttl = await cache.ttl(f"{BLACKLIST_PREFIX}{hash_token(token)}")

        assert 0 < ttl <= 900

    async def test_blacklist_only_logged_when_not_enforced(self, cache, settings, clock):
        lenient = TokenService(
            cache, settings.model_copy(update={"enforce_token_blacklist": False}), clock=clock
        )
        token = lenient.generate_access_token(IDENTITY_ID, "a@example.com")
        await lenient.revoke_token(token)

        payload = await lenient.verify_access_token(token)

        assert payload.identity_id == IDENTITY_ID

    async def test_blacklist_check_fails_open_on_cache_error(self, tokens, monkeypatch):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")

        async def _boom(key):
            raise ConnectionError("cache down")

        monkeypatch.setattr(tokens.cache, "exists", _boom)

        assert (await tokens.verify_access_token(token)).identity_id == IDENTITY_ID
        with pytest.raises(ConnectionError):
            await tokens.is_token_blacklisted(token)

    async def test_revoke_undecodable_or_expired(self, tokens, clock):
        assert await tokens.revoke_token("not-a-token") is False
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")
        clock.advance(1000)

        assert await tokens.revoke_token(token) is False

    async def test_revoke_raises_when_cache_fails(self, tokens, monkeypatch):
        token = tokens.generate_access_token(IDENTITY_ID, "a@example.com")

        async def _boom(*args, **kwargs):
            raise ConnectionError("cache down")

        monkeypatch.setattr(tokens.cache, "setex", _boom)

        with pytest.raises(InvalidTokenError):
            await tokens.revoke_token(token)

    async def test_revoke_all_only_touches_one_identity(self, tokens, cache):
        other_id = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
        mine = tokens.generate_refresh_token(IDENTITY_ID)
        tokens.generate_access_token(IDENTITY_ID, "a@example.com")
        theirs = tokens.generate_refresh_token(other_id)
        await tokens.drain()

        removed = await tokens.revoke_all_user_tokens(IDENTITY_ID)

        assert removed == 2
        assert await tokens.get_refresh_shadow(_payload(mine)["sessionId"]) is None
        assert await tokens.get_refresh_shadow(_payload(theirs)["sessionId"]) == theirs

    async def test_revoke_all_skips_malformed_records(self, tokens, cache):
        await cache.set(f"{SESSION_PREFIX}broken", "{not json")
        await cache.set(f"{REFRESH_PREFIX}broken", "shadow")

        assert await tokens.revoke_all_user_tokens(IDENTITY_ID) == 0
        assert await cache.get(f"{REFRESH_PREFIX}broken") == "shadow"


async def test_drain_waits_for_pending_writes(tokens):
    for _ in range(5):
        tokens.generate_refresh_token(IDENTITY_ID)
    await tokens.drain()

    assert not tokens._pending
