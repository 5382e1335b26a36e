"""
EngageTrack - FastAPI Backend

Main application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

logger = logging.getLogger(__name__)
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.db.postgres import init_db, close_db
from app.db.redis import redis_client
from app.middleware.rate_limit import setup_rate_limiting

# Import routers
from app.api.v1 import analytics_api, health, tracking, unsubscribe


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)
    logger.info("Analytics refresh mode: %s", settings.analytics_refresh_mode)

    # Validate production settings
    try:
        settings.validate_production_settings()
        logger.info("Production settings validated successfully")
    except ValueError as e:
        if settings.environment == "production":
            logger.error("CRITICAL: %s", e)
            raise  # Stop startup in production with invalid config
        else:
            logger.warning("Production settings validation: %s", e)

    # Initialize database
    try:
        await init_db()
        logger.info("Database connected and tables created")
    except Exception as e:
        logger.error("Database initialization failed: %s", e)
        logger.error("Tracking events will NOT be recorded without database!")

    yield

    # Shutdown
    await redis_client.close()
    logger.info("Redis disconnected")
    await close_db()
    logger.info("Database disconnected")
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    EngageTrack API

    Email engagement tracking and campaign analytics.

    ## Features

    - **Tracking**: Open pixel, click redirect and delivery webhooks
    - **Unsubscribe**: Signed one-click unsubscribe links
    - **Analytics**: Per-campaign counters, timelines and recipient summaries
    """,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
# Tracking responses set their own wildcard origin; this covers the dashboard
allowed_origins = [settings.frontend_url]
if settings.environment == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:5173",  # Vite default
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept"],
)

# Rate limiting
setup_rate_limiting(app)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


# Include routers
app.include_router(health.router)  # Health check at /health (no /api/v1 prefix)
app.include_router(tracking.router, prefix=settings.api_v1_prefix)
app.include_router(unsubscribe.router, prefix=settings.api_v1_prefix)
app.include_router(analytics_api.router, prefix=settings.api_v1_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
