from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskboard.api.error_handling import register_exception_handlers
from taskboard.api.routes import router
from taskboard.config import get_settings
from taskboard.logging import bind_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and release the DB pool afterwards."""
    from taskboard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="Taskboard API", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with the caller's X-Request-ID (or a fresh one) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
