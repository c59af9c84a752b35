"""
FastAPI application with AppContext lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from eventsync.config import settings
from eventsync.context import AppContext, build_context
from eventsync.features.schedule.api.router import router as schedule_router
from eventsync.infrastructure.observability.logging import get_logger, log_request, setup_logging
from eventsync.routes import debug, health

# Setup logging before creating the app
setup_logging(
    log_level="DEBUG" if settings.debug else "INFO", json_logs=not settings.is_dev()
)
logger = get_logger(__name__)


def create_app(ctx: AppContext | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        ctx: Prebuilt context; when None the lifespan builds one from settings
            and closes it on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Application starting",
            environment=settings.environment,
            storage_backend=settings.STORAGE_BACKEND,
        )
        owned = ctx is None
        try:
            app.state.ctx = ctx or await build_context(settings)
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e))
            raise
        logger.info("All services initialized successfully")

        yield

        logger.info("Application shutting down")
        if owned:
            try:
                await app.state.ctx.close()
            except Exception as e:
                logger.error("Error closing services", error=str(e))
            else:
                logger.info("All services closed successfully")

    app = FastAPI(
        title="Event Schedule Sync",
        description="Conference schedule sync, change feed and push notifications",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(schedule_router)
    if not settings.is_prod():
        app.include_router(debug.router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        log_request(
            request.method,
            request.url.path,
            response.status_code,
            round(process_time, 2),
            request_id=request.headers.get("x-request-id"),
        )
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
