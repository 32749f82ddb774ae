from __future__ import annotations

import math
import re
import secrets
import string
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from kokoru.logging import get_logger
from kokoru.service.errors import ServerError, ValidationError

logger = get_logger(__name__)

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_REPEAT_RE = re.compile(r"(.)\1{2,}")
_COMMON_PATTERNS = (
    "123",
    "abc",
    "qwerty",
    "password",
    "admin",
    "letmein",
    "welcome",
    "monkey",
    "dragon",
)

_TEMP_PASSWORD_LENGTH = 12
_TEMP_PASSWORD_SPECIALS = "!@#$%^&*"
_TEMP_PASSWORD_CHARSET = string.ascii_letters + string.digits + _TEMP_PASSWORD_SPECIALS

_CRACK_TIME_BUCKETS = (
    "instantly",
    "a few seconds",
    "a few minutes",
    "a few hours",
    "several days",
    "months or years",
)

MAX_STRENGTH_SCORE = 5.0


@dataclass
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special: bool = False


@dataclass
class PasswordStrength:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: float = 0.0


class PasswordService:
    """argon2id hashing plus the password policy checks used at signup and reset.

    Hashing is CPU bound; async callers should run ``hash``/``verify`` in a
    worker thread.
    """

    def __init__(
        self,
        policy: Optional[PasswordPolicy] = None,
        *,
        memory_cost: int = 65536,
        time_cost: int = 3,
        parallelism: int = 4,
    ) -> None:
        self.policy = policy or PasswordPolicy()
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        if not password or not isinstance(password, str):
            raise ValidationError("Password must be a non-empty string")
        try:
            return self._hasher.hash(password)
        except Exception as exc:
            logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise ServerError("Failed to process password") from exc

    def verify(self, password_hash: Optional[str], password: Optional[str]) -> bool:
        if not password_hash or not password:
            return False
        if not isinstance(password_hash, str) or not isinstance(password, str):
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("password_hash_malformed")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHash, ValueError) as exc:
            logger.warning("password_rehash_check_failed", error_type=type(exc).__name__)
            return False

    def validate_strength(self, password: Optional[str]) -> PasswordStrength:
        if not password:
            return PasswordStrength(is_valid=False, errors=["Password is required"], score=0.0)

        policy = self.policy
        errors: List[str] = []
        score = 0.0

        if len(password) < policy.min_length:
            errors.append(f"Password must be at least {policy.min_length} characters long")
        else:
            score += 1
            if len(password) >= 12:
                score += 0.5
            if len(password) >= 16:
                score += 0.5

        checks = (
            (policy.require_uppercase, _UPPER_RE, "Password must contain at least one uppercase letter"),
            (policy.require_lowercase, _LOWER_RE, "Password must contain at least one lowercase letter"),
            (policy.require_numbers, _DIGIT_RE, "Password must contain at least one number"),
            (policy.require_special, _SPECIAL_RE, "Password must contain at least one special character"),
        )
        for required, pattern, message in checks:
            if pattern.search(password):
                score += 1
            elif required:
                errors.append(message)

        lowered = password.lower()
        if any(pattern in lowered for pattern in _COMMON_PATTERNS):
            errors.append("Password contains common patterns or sequences")
            score = max(0.0, score - 1)

        if _REPEAT_RE.search(password):
            errors.append("Password contains too many repeated characters")
            score = max(0.0, score - 0.5)

        score = min(MAX_STRENGTH_SCORE, max(0.0, score))
        return PasswordStrength(is_valid=not errors, errors=errors, score=score)

    def generate_temporary_password(self) -> str:
        """Random 12-character password holding every class the policy requires."""
        rng = secrets.SystemRandom()
        pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits]
        if self.policy.require_special:
            pools.append(_TEMP_PASSWORD_SPECIALS)
        chars = [secrets.choice(pool) for pool in pools]
        chars += [
            secrets.choice(_TEMP_PASSWORD_CHARSET)
            for _ in range(_TEMP_PASSWORD_LENGTH - len(chars))
        ]
        rng.shuffle(chars)
        return "".join(chars)

    def estimate_crack_time(self, password: str) -> str:
        """Coarse UI hint derived from the strength score."""
        score = self.validate_strength(password).score
        index = min(len(_CRACK_TIME_BUCKETS) - 1, int(math.floor(score)))
        return _CRACK_TIME_BUCKETS[index]
