from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from otpgate.api.error_handling import register_exception_handlers
from otpgate.api.routes import router
from otpgate.config import Settings, get_settings
from otpgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from otpgate.service.runtime import get_runtime
    from otpgate.storage.redis_cache import RedisStore

    runtime = get_runtime()
    logger.info("app_started", store_type=type(runtime.store).__name__)

    yield

    if isinstance(runtime.store, RedisStore):
        await runtime.store.close()
    logger.info("runtime_cleanup_complete")


async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID (generated if absent)
    and echo it back on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def health():
    return {"status": "ok", "version": __version__}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application with auth routes mounted at the same prefix the
    refresh cookie is scoped to."""
    settings = settings or get_settings()
    application = FastAPI(title="otpgate", version=__version__, lifespan=lifespan)
    application.middleware("http")(add_correlation_id)
    application.get("/healthz", tags=["health"])(health)
    register_exception_handlers(application, refresh_cookie_path=settings.auth_path_prefix)
    application.include_router(router, prefix=settings.auth_path_prefix.rstrip("/"))
    return application


app = create_app()
