"""FastAPI application factory and configuration."""

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sitehost.config import settings
from sitehost.database import async_session_factory
from sitehost.dependencies import get_reconciliation_loop
from sitehost.logging_config import setup_logging
from sitehost.services.billing_reconciler import prune_expired_events

logger = logging.getLogger(__name__)


def build_scheduler() -> AsyncIOScheduler:
    """Reconciliation tick plus the daily payment event retention job."""
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        get_reconciliation_loop().tick,
        "interval",
        seconds=settings.POLL_INTERVAL_SECONDS,
        id="reconciliation_tick",
        name="Domain activation reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        partial(
            prune_expired_events,
            async_session_factory,
            settings.PAYMENT_EVENT_RETENTION_DAYS,
        ),
        "interval",
        hours=24,
        id="payment_event_retention",
        name="Payment event retention",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info(f"Starting sitehost domains service in {settings.ENVIRONMENT} mode")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")  # Hide credentials

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler()
        scheduler.start()
        logger.info(f"Reconciliation scheduled every {settings.POLL_INTERVAL_SECONDS}s")

    yield

    # Shutdown
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info("Shutting down sitehost domains service")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Sitehost Domains",
        description="Custom domain provisioning, TLS activation and billing gating for hosted sites",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure based on environment in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "sitehost-domains",
            "version": "0.1.0",
            "environment": settings.ENVIRONMENT,
        }

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "message": "Sitehost Domains API",
            "docs": "/docs",
            "health": "/health",
        }

    # Mount routes
    from sitehost.routes import admin, domains, registrar, webhooks

    app.include_router(domains.router, prefix="/api", tags=["Domains"])
    app.include_router(registrar.router, prefix="/api", tags=["Registrar"])
    app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
    app.include_router(admin.router, prefix="/api", tags=["Admin"])

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sitehost.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )
