from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from kokoru.config import Settings, get_settings
from kokoru.logging import get_logger
from kokoru.service.auth import AuthService
from kokoru.service.email import EmailService
from kokoru.service.identities import IdentityGateway
from kokoru.service.notifications import EmailDispatcher
from kokoru.service.oauth import GoogleOAuthService
from kokoru.service.passwords import PasswordPolicy, PasswordService
from kokoru.service.rate_limiter import RateLimiterService
from kokoru.service.tokens import TokenService
from kokoru.storage.memory import MemoryStore
from kokoru.storage.postgres import PostgresStore
from kokoru.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the service instances for one application process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(bulk_update_limit=self.settings.bulk_update_limit)
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=int(self.settings.store_timeout_seconds * 1000),
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    bulk_update_limit=self.settings.bulk_update_limit,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.identities = IdentityGateway(
            self.store,
            timeout_seconds=self.settings.store_timeout_seconds,
            production=self.settings.is_production,
            security_delay_ms=(
                (0, 0)
                if self.settings.test_mode
                else (self.settings.security_delay_min_ms, self.settings.security_delay_max_ms)
            ),
        )
        self.passwords = PasswordService(
            PasswordPolicy(
                min_length=self.settings.password_min_length,
                require_uppercase=self.settings.password_require_uppercase,
                require_lowercase=self.settings.password_require_lowercase,
                require_numbers=self.settings.password_require_numbers,
                require_special=self.settings.password_require_special,
            ),
            memory_cost=self.settings.argon2_memory_cost,
            time_cost=self.settings.argon2_time_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.tokens = TokenService(self.cache, self.settings)
        self.rate_limiter = RateLimiterService(
            self.cache,
            max_login_attempts=self.settings.max_login_attempts,
            login_window_seconds=self.settings.login_window_seconds,
            email_resend_delay_seconds=self.settings.email_resend_delay_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.dispatcher = EmailDispatcher(self.email, queue_size=self.settings.email_queue_size)
        self.oauth = GoogleOAuthService(self.identities, self.settings, cache=self.cache)
        self.auth = AuthService(
            self.identities,
            self.tokens,
            self.passwords,
            self.rate_limiter,
            self.oauth,
            self.email,
            self.dispatcher,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
            google_configured=self.oauth.configured,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and login rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; token blacklist, sessions "
                "and login rate limits are in-memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def start(self) -> None:
        await self.dispatcher.start()

    async def close(self) -> None:
        """Flush background work and release connections."""
        await self.dispatcher.stop()
        await self.tokens.drain()
        try:
            await self.cache.close()
        except Exception as exc:
            logger.warning("runtime_cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")

