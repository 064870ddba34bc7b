"""FastAPI application for the token usage service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text

from token_usage import __version__
from token_usage.aggregation import (
    aggregation_router,
    start_aggregation_scheduler,
    stop_aggregation_scheduler,
)
from token_usage.config import get_settings
from token_usage.db import close_database, get_session, init_database
from token_usage.overview import overview_router
from token_usage.query import query_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    settings = get_settings()

    await init_database()

    # Startup: Start the aggregation scheduler
    if settings.aggregation_scheduler_enabled:
        logger.info("Starting aggregation scheduler")
        await start_aggregation_scheduler()

    yield

    # Shutdown: Stop the aggregation scheduler
    if settings.aggregation_scheduler_enabled:
        try:
            logger.info("Stopping aggregation scheduler")
            await stop_aggregation_scheduler()
        except Exception as e:
            logger.error("Failed to stop aggregation scheduler: %s", e)

    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.service_name,
        description="Token usage metering with hour/day/month rollups",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "healthy", "service": settings.service_name}

    # Ready check endpoint
    @app.get("/ready")
    async def ready_check() -> dict:
        """Readiness check endpoint."""
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ready", "service": settings.service_name}

    # Provides:
    # - GET /usage/statistics/{dimension_type}/{dimension_id}
    # - GET /usage/trends
    # - GET /usage/totals
    # - GET /usage/top/{dimension_type}
    # - GET /usage/details
    app.include_router(query_router)

    # Provides:
    # - POST /usage/admin/aggregate
    # - POST /usage/admin/rebuild
    # - POST /usage/admin/cleanup
    # - GET /usage/admin/scheduler
    app.include_router(aggregation_router)

    # Provides:
    # - GET /usage/admin/overview
    # - GET /usage/admin/health
    app.include_router(overview_router)

    return app
