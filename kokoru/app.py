from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from kokoru.api.error_handling import register_exception_handlers
from kokoru.api.routes import router
from kokoru.config import Settings, get_settings
from kokoru.logging import get_logger, set_correlation_id
from kokoru.service.runtime import Runtime
from kokoru.storage.redis_cache import RedisCache

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = Runtime(settings or get_settings())
        await runtime.start()
        app.state.runtime = runtime
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            try:
                await runtime.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Kokoru Auth", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Take the correlation id from X-Request-ID or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        runtime: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        if isinstance(runtime.cache, RedisCache):
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(runtime.cache.verify_connection),
                    HEALTH_CHECK_TIMEOUT_SECONDS,
                )
                checks["redis"] = {"status": "healthy"}
            except Exception as exc:
                logger.error("health_check_redis_failed", error=str(exc))
                checks["redis"] = {"status": "unhealthy"}
        else:
            checks["redis"] = {"status": "not_configured"}
        checks["store"] = {
            "status": "healthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }

        healthy = all(c["status"] != "unhealthy" for c in checks.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
