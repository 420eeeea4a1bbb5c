"""
Health check endpoint with database and last-run status
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.dependencies import get_db
from models.checkpoint import SourceCheckpoint
from models.etl_run import PipelineRun
from schemas.api import CheckpointInfo, HealthCheckResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - State of the most recent run
    - Incremental checkpoint per source
    """
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")
        return HealthCheckResponse(database_connected=False)

    last_run = None
    checkpoints = []
    try:
        result = await db.execute(
            select(PipelineRun).order_by(PipelineRun.started_at.desc(), PipelineRun.id.desc()).limit(1)
        )
        last_run = result.scalar_one_or_none()

        result = await db.execute(
            select(SourceCheckpoint).order_by(SourceCheckpoint.source_system, SourceCheckpoint.entity_type)
        )
        checkpoints = [CheckpointInfo.model_validate(c) for c in result.scalars().all()]
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch run status: {str(e)}")

    return HealthCheckResponse(
        database_connected=True,
        last_run_id=last_run.run_id if last_run else None,
        last_run_state=last_run.state if last_run else None,
        last_run_exit_code=last_run.exit_code if last_run else None,
        checkpoints=checkpoints,
    )
