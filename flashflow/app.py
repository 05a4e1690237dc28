from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from flashflow.api.error_handling import register_exception_handlers
from flashflow.api.routes import router
from flashflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its resources on shutdown."""
    from flashflow.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", llm_backend=runtime.llm.backend.mode)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="FlashFlow", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Take the correlation id from X-Request-ID or generate one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        from flashflow.service.runtime import get_runtime

        runtime = get_runtime()
        return {
            "status": "healthy",
            "version": __version__,
            "llm_backend": runtime.llm.backend.mode,
            "active_runs": len(runtime.scheduler.active_runs()),
        }

    return app


app = create_app()


def main() -> None:
    """Serve the API with uvicorn on FLASHFLOW_HOST:FLASHFLOW_PORT."""
    import uvicorn

    from flashflow.config import get_settings

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
