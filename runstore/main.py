"""
FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from runstore.api.deps import ServiceContainer, container as default_container
from runstore.api.v1 import health, runs, websocket
from runstore.core.config import settings
from runstore.core.constants import API_PREFIX
from runstore.core.exceptions import RunStoreError
from runstore.core.logging import get_logger, setup_logging

# Initialize logging
setup_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    container: ServiceContainer = app.state.container

    # Startup
    logger.info(
        "Starting run store",
        app_name=settings.app_name,
        env=settings.app_env,
        docs_dir=str(container.settings.storage.docs_dir),
    )

    await container.startup()
    for family, view in container.views.items():
        view.subscribe(websocket.connection_manager.snapshot_listener(family))
    logger.info("Service container initialized")

    yield

    # Shutdown
    logger.info("Shutting down run store")
    await container.shutdown()


async def run_store_error_handler(request: Request, exc: RunStoreError) -> JSONResponse:
    """Handle custom application errors."""
    logger.error(
        "Application error",
        error_code=exc.code,
        error_message=exc.message,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected errors."""
    logger.exception(
        "Unexpected error",
        error=str(exc),
        path=request.url.path,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            }
        },
    )


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the application around a service container."""
    app = FastAPI(
        title="Run Store API",
        description="Incremental storage and live snapshots of generation runs",
        version=VERSION,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.container = container or default_container

    # Exception handlers
    app.add_exception_handler(RunStoreError, run_store_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers
    app.include_router(health.router, prefix=API_PREFIX, tags=["Health"])
    app.include_router(runs.router, prefix=API_PREFIX, tags=["Runs"])
    app.include_router(websocket.router, prefix=API_PREFIX, tags=["WebSocket"])

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": VERSION,
            "docs": "/docs" if settings.debug else "Disabled in production",
        }

    # API info endpoint
    @app.get("/api")
    async def api_info() -> dict[str, Any]:
        """API information endpoint."""
        return {
            "name": "Run Store API",
            "version": VERSION,
            "prefix": API_PREFIX,
            "endpoints": {
                "health": f"{API_PREFIX}/health",
                "runs": f"{API_PREFIX}/runs/{{family}}",
                "snapshot": f"{API_PREFIX}/runs/{{family}}/snapshot",
                "websocket": f"{API_PREFIX}/ws/runs/{{family}}",
            },
        }

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "runstore.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )


if __name__ == "__main__":
    run()
