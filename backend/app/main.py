"""FastAPI application entry point.

This module configures the FastAPI application with:
- Logging and the image provider client lifecycle
- CORS middleware for frontend communication
- API v1 router with all endpoints
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.database import close_db, get_engine
from app.core.logging import configure_logging
from app.services.generation_coordinator import drain_settling
from app.services.image_provider import build_provider_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events.

    Handles:
    - Logging configuration
    - Image provider client creation and shutdown
    - Waiting for debited generations to settle
    - Database engine disposal
    """
    configure_logging()
    logger.info(f"Starting {settings.PROJECT_NAME} API...")

    app.state.provider_client = build_provider_client(settings)
    logger.info(f"Image provider client ready (model={settings.IMAGE_MODEL})")

    yield  # Application is running

    logger.info(f"Shutting down {settings.PROJECT_NAME} API...")
    await drain_settling()
    await app.state.provider_client.close()
    await close_db()
    logger.info("Provider client and database engine closed")


app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Token-metered AI image generation",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost",
        "http://localhost:5173",
        "http://localhost:8001",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/api/health")
async def health_check():
    """Health check endpoint.

    Returns basic health status. For database connectivity, use
    /api/v1/status.
    """
    return {"status": "ok", "service": "imageforge-backend"}


@app.get("/api/v1/status")
async def status_check():
    """API status endpoint with service health details."""
    database_status = "unknown"
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        database_status = "connected"
    except Exception as e:
        logger.warning(f"Database status check failed: {e}")
        database_status = f"error: {str(e)}"

    return {
        "status": "running",
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {
            "database": database_status,
            "image_model": settings.IMAGE_MODEL,
            "asset_storage": settings.ASSET_STORAGE_BACKEND,
        },
    }
