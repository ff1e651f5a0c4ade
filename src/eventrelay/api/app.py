"""
Module: app.py
Description: FastAPI application exposing the delivery operations API.

The coordinator is started and stopped with the application lifespan.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from eventrelay.config.settings import DeliverySettings
from eventrelay.delivery.coordinator import DeliveryCoordinator
from eventrelay.utils.logger import configure_logging, get_logger
from eventrelay.api.router import create_router

logger = get_logger(__name__)


def create_app(coordinator: DeliveryCoordinator) -> FastAPI:
    """
    Build the operations application around a coordinator.

    Args:
        coordinator: Coordinator started on startup and stopped on shutdown

    Returns:
        Configured FastAPI application
    """
    settings = coordinator.settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting delivery service", version=settings.app_version)
        await coordinator.start()
        try:
            yield
        finally:
            logger.info("Shutting down delivery service")
            await coordinator.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Operations API for resilient event delivery",
        version=settings.app_version,
        lifespan=lifespan
    )
    app.include_router(create_router(coordinator))

    @app.get("/health")
    async def health_check():
        """Report whether the coordinator is running and the network state."""
        monitor = coordinator.monitor
        return {
            "status": "ok" if coordinator.is_running else "stopped",
            "version": settings.app_version,
            "connectivity": monitor.connectivity.value if monitor is not None else None,
            "queue_size": coordinator.queue.count
        }

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(
            "HTTP exception occurred",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.status_code,
                    "message": exc.detail,
                    "type": "http_exception"
                }
            }
        )

    return app


def app_factory() -> FastAPI:
    """Application factory for uvicorn, configured from the environment."""
    return create_app(DeliveryCoordinator.create(DeliverySettings()))
