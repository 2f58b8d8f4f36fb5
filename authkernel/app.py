from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from authkernel.api.error_handling import register_exception_handlers
from authkernel.api.middleware import install_middleware
from authkernel.api.routes import router
from authkernel.logging import get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="authkernel", version=__version__, lifespan=lifespan)
    install_middleware(app)
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
