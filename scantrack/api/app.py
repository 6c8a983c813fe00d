"""FastAPI application factory with lifespan management."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scantrack.api.routers import scans, services, webhook
from scantrack.ci.gitlab import GitLabExecutor
from scantrack.core.config import get_settings
from scantrack.core.database import close_engine, get_engine, get_session_factory
from scantrack.core.logging import configure_logging, get_logger
from scantrack.core.scheduler import ReconciliationScheduler

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("Starting ScanTrack", debug=settings.app_debug)

    # Warm up DB connection pool
    get_engine()

    scheduler = ReconciliationScheduler(
        get_session_factory(), GitLabExecutor.from_settings(), settings=settings
    )
    await scheduler.start()
    app.state.scheduler = scheduler

    yield

    # Cleanup
    await scheduler.stop()
    await close_engine()
    logger.info("ScanTrack stopped")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="ScanTrack",
        description="Security scan pipeline tracking and finding comparison API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # API routers
    api_prefix = "/api/v1"
    app.include_router(services.router, prefix=api_prefix)
    app.include_router(scans.router, prefix=api_prefix)
    app.include_router(webhook.router, prefix=api_prefix)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": "0.1.0"}

    return app


app = create_app()
