"""
FastAPI application initialization
"""

from typing import Optional
import logging

from fastapi import FastAPI

from api.middleware import RequestContextMiddleware
from api.routes import health, runs
from core.config import settings
from core.database import get_session_maker
from core.logging import setup_logging
from pipeline.context import RunContext
from pipeline.scheduler import PipelineScheduler
from schemas.config import load_pipeline_config

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Warehouse ETL Run API",
    description="Read-only monitoring of pipeline runs, quality reports and rejects",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

app.include_router(health.router)
app.include_router(runs.router)

scheduler: Optional[PipelineScheduler] = None


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler
    logger.info("Starting Warehouse ETL Run API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        context = RunContext(
            config=load_pipeline_config(settings.PIPELINE_CONFIG_PATH),
            session_factory=get_session_maker(),
        )
        scheduler = PipelineScheduler(context)
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Warehouse ETL Run API")
    if scheduler is not None:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Warehouse ETL Run API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "runs": "/runs",
            "run": "/runs/{run_id}",
            "rejects": "/runs/{run_id}/rejects"
        }
    }
