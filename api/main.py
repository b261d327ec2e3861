
"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, gaps, cycles
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import MaintenanceScheduler

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Notes Sync Operator API",
    description="Status of the notes sync daemon: checkpoint, cycles and gaps",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Reconciler and boundary jobs
scheduler = MaintenanceScheduler()


# Include routers
app.include_router(health.router)
app.include_router(gaps.router)
app.include_router(cycles.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Notes Sync Operator API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Notes Sync Operator API")
    if scheduler.scheduler.running:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Notes Sync Operator API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "gaps": "/gaps",
            "cycles": "/cycles"
        }
    }
