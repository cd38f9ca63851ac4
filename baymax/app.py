from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from baymax.api.error_handling import register_exception_handlers
from baymax.api.guard import guard_requests
from baymax.api.routes import router
from baymax.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and release its connections after."""
    from baymax.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, auth_mode=runtime.auth_mode.value)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Baymax Chat Proxy", version=__version__, lifespan=lifespan)

    # Registration order matters: the last middleware added runs first
    app.middleware("http")(guard_requests)

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs and the response with the caller's X-Request-ID, or a fresh one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        from baymax.service.runtime import get_runtime

        runtime = get_runtime()
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            store_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            store_ok = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False

        return {
            "status": "healthy" if store_ok else "unhealthy",
            "timestamp": int(time.time() * 1000),
            "checks": {
                "store": {
                    "status": "healthy" if store_ok else "unhealthy",
                    "type": type(runtime.store).__name__,
                }
            },
        }

    return app


app = create_app()
