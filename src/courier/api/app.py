"""FastAPI application for Courier."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from courier.config import Settings
from courier.exceptions import (
    CourierError,
    NotFoundError,
    QueueError,
    StorageError,
    ValidationError,
)
from courier.logging import configure_logging, get_logger
from courier.service import CourierService

from .router import router, set_service

logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    The lifespan builds a CourierService from `settings`, connects it and
    starts the worker pool and scheduler; shutdown stops and closes it.

    Args:
        settings: Optional settings. Uses environment if None.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from courier.api import create_app

        app = create_app()
        # Run with: uvicorn courier.api:app
        ```
    """
    if settings is None:
        settings = Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(level=settings.log_level, format=settings.log_format, env=settings.env)
        logger.info(
            "Starting Courier API",
            log_level=settings.log_level,
            queue_backend=settings.queue_backend,
        )

        service = CourierService.create(settings)
        await service.connect()
        await service.start()
        set_service(service)

        yield

        set_service(None)
        await service.close()
        logger.info("Courier API stopped")

    from courier import __version__

    app = FastAPI(
        title="Courier",
        description="Signed, at-least-once webhook delivery.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Register exception handlers
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(QueueError)
    @app.exception_handler(StorageError)
    async def unavailable_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        """Handle store and queue outages with 503 status."""
        logger.error("Backend unavailable", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.exception_handler(CourierError)
    async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        """Handle all other Courier errors with 500 status."""
        logger.error("Courier error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router)

    return app


# Default app instance for uvicorn
app = create_app()
