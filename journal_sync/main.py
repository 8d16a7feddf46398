"""
Journal Sync Service - FastAPI Application

Multi-device sync backend for the travel journal apps.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import conflicts, devices, files, monitoring, sync
from .core.config import get_settings
from .core.scheduler import start_scheduler, stop_scheduler
from .core.storage import get_object_storage
from .db.connection import close_db, init_db
from .jobs import register_all_jobs

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Journal Sync Service...")
    logger.info(f"Environment: {settings.environment}")

    try:
        await init_db()
        logger.info("Database connection established")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        raise

    try:
        await get_object_storage().ensure_bucket_exists()
    except Exception as e:
        logger.error(f"Object storage unavailable: {e}")
        logger.warning("Continuing without object storage - file URLs will fail")

    logger.info("Starting background job scheduler...")
    register_all_jobs()
    start_scheduler()

    yield

    # Shutdown
    logger.info("Shutting down Journal Sync Service...")
    stop_scheduler()
    await close_db()
    logger.info("Database connection closed")


app = FastAPI(
    title="Journal Sync Service",
    description="Conflict-aware, batch and delta sync for the travel journal apps",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync.router, prefix="/api/v1")
app.include_router(conflicts.router, prefix="/api/v1")
app.include_router(devices.router, prefix="/api/v1")
app.include_router(files.router, prefix="/api/v1")
app.include_router(monitoring.router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.service_name}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.service_name,
        "version": "1.0.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "journal_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
    )
