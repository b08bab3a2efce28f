"""
FastAPI application entry point — the local weather endpoint.

Run with:
    uvicorn weather_bridge.app.main:create_app --factory --host 127.0.0.1 --port 5005

Or through the CLI:
    python -m weather_bridge serve

Settings are loaded once here; a missing WEATHER_API_BASE_URL stops the
process before it binds the port.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

# ── Core infrastructure ──
from weather_bridge.app.core.config import Settings, get_settings
from weather_bridge.app.core.database import close_db
from weather_bridge.app.core.errors import register_error_handlers
from weather_bridge.app.core.middleware import RequestLoggingMiddleware

# ── API routers ──
from weather_bridge.app.api.weather import router as weather_router
from weather_bridge.app.scheduler.sync_loop import SyncLoop

logger = logging.getLogger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the scheduler loop next to the endpoint; stop it on shutdown."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )

    loop: Optional[SyncLoop] = None
    if settings.SCHEDULER_ENABLED:
        loop = SyncLoop.from_settings(settings)
        loop.start()

    yield

    if loop is not None:
        await loop.stop()
    await close_db()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Local proxy in front of the hourly weather provider. "
            "Serves the latest normalized sample per coordinate to the "
            "measurement orchestrator."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app, settings)

    app.include_router(weather_router)
    app.dependency_overrides[get_settings] = lambda: settings

    return app
