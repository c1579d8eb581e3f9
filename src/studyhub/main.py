"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from studyhub.config import get_settings
from studyhub.database import close_db, init_db
from studyhub.health.router import router as health_router
from studyhub.middleware import setup_middleware
from studyhub.notifications.router import router as notifications_router
from studyhub.realtime.stream import RedisChangeStream
from studyhub.redis_client import close_redis, get_redis, init_redis
from studyhub.tracking.router import router as study_sessions_router
from studyhub.ws.manager import ConnectionManager
from studyhub.ws.router import router as ws_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)

    app.state.change_stream = RedisChangeStream(get_redis(), prefix=settings.change_channel_prefix)
    logger.info("studyhub_started", version=settings.app_version, environment=settings.environment)

    yield

    await close_db()
    await close_redis()
    logger.info("studyhub_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="StudyHub Realtime",
        description="Live updates, notifications and study-time tracking for StudyHub",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.ws_manager = ConnectionManager(max_connections_per_user=settings.ws_max_connections_per_user)

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(notifications_router)
    app.include_router(study_sessions_router)
    app.include_router(ws_router)

    return app


app = create_app()
