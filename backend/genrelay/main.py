"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from genrelay.api.v1 import events, health, realtime, webhooks
from genrelay.config import settings
from genrelay.logging import setup_logging
from genrelay.services.realtime.registry import SubscriptionRegistry

# Configure logging before anything else
setup_logging()

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting genrelay realtime server", debug=settings.debug)
    yield

    stats = app.state.registry.stats()
    logger.info("Shutting down genrelay realtime server", open_connections=stats["totalConnections"])


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    app = FastAPI(
        title="genrelay",
        description="Realtime generation-orchestration protocol server",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = SubscriptionRegistry()

    app.include_router(realtime.ws_router)
    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(realtime.router, prefix="/api/v1", tags=["realtime"])
    app.include_router(webhooks.router, prefix="/api/v1", tags=["webhooks"])
    app.include_router(events.router, prefix="/api/v1", tags=["events"])
    return app


app = create_app()
