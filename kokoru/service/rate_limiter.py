from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from kokoru.logging import get_logger

logger = get_logger(__name__)

LOGIN_ATTEMPTS_PREFIX = "login_attempts:"
EMAIL_RESEND_PREFIX = "email_resend:"


@dataclass
class LoginAttemptStatus:
    can_attempt: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None


@dataclass
class ResendStatus:
    can_resend: bool
    next_allowed_at: Optional[datetime] = None


class RateLimiterService:
    """Failed-login counters and email-resend cooldowns kept in the cache.

    The login window is anchored to the first failure: later failures raise
    the count but never push the expiry out.
    """

    def __init__(
        self,
        cache,
        *,
        max_login_attempts: int = 5,
        login_window_seconds: int = 15 * 60,
        email_resend_delay_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.max_login_attempts = max_login_attempts
        self.login_window_seconds = login_window_seconds
        self.email_resend_delay_seconds = email_resend_delay_seconds
        self._clock = clock

    def _from_epoch(self, seconds: float) -> datetime:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    async def check_login_attempts(self, identity_id: str) -> LoginAttemptStatus:
        key = f"{LOGIN_ATTEMPTS_PREFIX}{identity_id}"
        raw = await self.cache.get(key)
        try:
            count = int(raw or 0)
        except ValueError:
            logger.warning("login_attempts_counter_malformed", user_id=identity_id)
            count = 0
        if count >= self.max_login_attempts:
            ttl = await self.cache.ttl(key)
            if ttl > 0:
                return LoginAttemptStatus(
                    can_attempt=False,
                    attempts_remaining=0,
                    locked_until=self._from_epoch(self._clock() + ttl),
                )
        return LoginAttemptStatus(
            can_attempt=True,
            attempts_remaining=max(0, self.max_login_attempts - count),
        )

    async def record_failed_login(self, identity_id: str) -> int:
        count = await self.cache.incr_with_window(
            f"{LOGIN_ATTEMPTS_PREFIX}{identity_id}", self.login_window_seconds
        )
        logger.info("login_failure_recorded", user_id=identity_id, attempts=count)
        return count

    async def reset_login_attempts(self, identity_id: str) -> None:
        await self.cache.delete(f"{LOGIN_ATTEMPTS_PREFIX}{identity_id}")

    async def check_email_resend(self, identity_id: str) -> ResendStatus:
        key = f"{EMAIL_RESEND_PREFIX}{identity_id}"
        now_ms = int(self._clock() * 1000)
        delay_ms = self.email_resend_delay_seconds * 1000
        raw = await self.cache.get(key)
        if raw:
            try:
                last_sent_ms = int(raw)
            except ValueError:
                last_sent_ms = None
            if last_sent_ms is not None and now_ms - last_sent_ms < delay_ms:
                return ResendStatus(
                    can_resend=False,
                    next_allowed_at=self._from_epoch((last_sent_ms + delay_ms) / 1000),
                )
        await self.cache.set(key, str(now_ms), ex=self.email_resend_delay_seconds)
        return ResendStatus(can_resend=True)
