"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from ledgerline.api.router import api_router
from ledgerline.config import settings
from ledgerline.dependencies import close_dependencies, get_dispatcher
from ledgerline.models.database import close_db, init_db
from ledgerline.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    if settings.STORAGE_BACKEND == "sql":
        await init_db()

    dispatcher = app.dependency_overrides.get(get_dispatcher, get_dispatcher)()
    await dispatcher.queue.start()
    logger.info("app_started", version=settings.APP_VERSION, storage=settings.STORAGE_BACKEND)

    yield

    # Shutdown
    await dispatcher.queue.stop()
    await close_dependencies()
    if settings.STORAGE_BACKEND == "sql":
        await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Ledgerline",
        description="Mobile-money statement ingestion, categorization, anomaly detection and reconciliation.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    app.include_router(api_router)
    return app


# Application instance
app = create_app()
