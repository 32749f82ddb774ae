import asyncio
import inspect
import os
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock

# Environment for anything that reads settings from the process (the app factory)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("SECURITY_DELAY_MIN_MS", "0")
os.environ.setdefault("SECURITY_DELAY_MAX_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kokoru.config import Settings, reset_settings_cache  # noqa: E402
from kokoru.service.auth import AuthService  # noqa: E402
from kokoru.service.email import EmailService  # noqa: E402
from kokoru.service.identities import IdentityGateway  # noqa: E402
from kokoru.service.notifications import EmailDispatcher  # noqa: E402
from kokoru.service.oauth import GoogleOAuthService  # noqa: E402
from kokoru.service.passwords import PasswordService  # noqa: E402
from kokoru.service.rate_limiter import RateLimiterService  # noqa: E402
from kokoru.service.tokens import TokenService  # noqa: E402
from kokoru.storage.memory import MemoryStore  # noqa: E402
from kokoru.storage.redis_cache import MemoryCache  # noqa: E402


class FakeClock:
    """Controllable ``time.time`` replacement."""

    def __init__(self, start: float | None = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        jwt_access_secret="test-access-secret-for-automation-only-0123456789",
        jwt_refresh_secret="test-refresh-secret-for-automation-only-9876543210",
        google_client_id="kokoru-client.apps.googleusercontent.com",
        google_client_secret="google-secret",
        google_redirect_uri="http://localhost:3000/auth/google/callback",
        argon2_memory_cost=1024,
        argon2_time_cost=1,
        argon2_parallelism=1,
        security_delay_min_ms=0,
        security_delay_max_ms=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identities(store):
    return IdentityGateway(store, timeout_seconds=3.0, security_delay_ms=(0, 0))


@pytest.fixture
def passwords(settings):
    return PasswordService(
        memory_cost=settings.argon2_memory_cost,
        time_cost=settings.argon2_time_cost,
        parallelism=settings.argon2_parallelism,
    )


@pytest.fixture
def tokens(cache, settings, clock):
    return TokenService(cache, settings, clock=clock)


@pytest.fixture
def rate_limiter(cache, settings, clock):
    return RateLimiterService(
        cache,
        max_login_attempts=settings.max_login_attempts,
        login_window_seconds=settings.login_window_seconds,
        email_resend_delay_seconds=settings.email_resend_delay_seconds,
        clock=clock,
    )


@pytest.fixture
def email_service():
    return MagicMock(spec=EmailService)


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock(spec=EmailDispatcher)
    dispatcher.submit.return_value = True
    return dispatcher


@pytest.fixture
def oauth(identities, settings, cache):
    return GoogleOAuthService(identities, settings, cache=cache)


@pytest.fixture
def auth_service(identities, tokens, passwords, rate_limiter, oauth, email_service, dispatcher, settings):
    return AuthService(
        identities,
        tokens,
        passwords,
        rate_limiter,
        oauth,
        email_service,
        dispatcher,
        settings,
    )


@pytest.fixture
def submitted_actions(dispatcher):
    """Email actions queued on the mocked dispatcher, in order."""

    def _actions():
        return [c.args[0].action for c in dispatcher.submit.call_args_list]

    return _actions


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
