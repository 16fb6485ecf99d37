"""Approval and promotion API."""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from loguru import logger

from src.promoter.core.config import settings
from src.promoter.core.logging import setup_logging
from src.promoter.monitoring.metrics import metrics_endpoint
from src.promoter.monitoring.tracing import setup_tracing
from src.promoter.api import api_router
from src.promoter.api.health import router as health_router
from src.promoter.services.promotion_service import promotion_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle: startup and shutdown."""
    logger.info("🚀 Starting Canary Promoter v{}", settings.VERSION)

    yield

    active = promotion_service.active
    if active is not None and active.task is not None:
        # Leave the cluster at whatever the last finished step produced
        logger.warning(f"⚠️  Stopping with promotion {active.id} still running")
        active.task.cancel()
    logger.info("✅ Shutdown complete")


def create_app() -> FastAPI:
    """Create FastAPI application with all routes."""

    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    setup_tracing(app)

    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(api_router, prefix=settings.API_V1_STR)

    # Prometheus metrics endpoint
    app.add_route("/metrics", metrics_endpoint)

    logger.info("📦 Application configured successfully")

    return app


app = create_app()
