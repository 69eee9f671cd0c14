"""
Main FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantbase import __version__
from tenantbase.config import get_settings
from tenantbase.dependencies import Services, build_services
from tenantbase.exceptions import AppError

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    """Root logger setup for the service process."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # asyncpg and SQLAlchemy are chatty at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.
    Builds the service container on startup and closes every pool on shutdown.
    """
    settings = get_settings()
    logger.info("Starting %s v%s", settings.app_name, __version__)
    logger.info("Debug: %s", settings.debug)

    services: Optional[Services] = getattr(app.state, "services", None)
    if services is None:
        services = build_services(settings)
        app.state.services = services

    await services.startup()
    logger.info("Registry and tenant pool manager ready")

    yield

    await services.shutdown()
    logger.info("%s shutdown complete", settings.app_name)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A prebuilt Services container can be passed in; otherwise one is
    built from settings at startup.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Database-per-tenant provisioning and query API",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from tenantbase.routers import database, health, projects

    app.include_router(health.router, tags=["Health"])
    app.include_router(projects.router, prefix="/api", tags=["Projects"])
    app.include_router(database.router, prefix="/api", tags=["Database"])

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        """Render domain errors as {"error", "detail"}."""
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "detail": exc.extra_detail},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    return app


configure_logging(get_settings().debug)

# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tenantbase.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
