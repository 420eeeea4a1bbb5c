"""
Run monitoring endpoints: run records, quality reports and rejects
"""

from typing import Optional
import logging
import math
import time
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from models.base import PipelineState
from models.etl_run import PipelineRun
from models.reject import RejectRecord
from pipeline.quality import load_report
from schemas.api import (
    PaginationMetadata,
    RejectInfo,
    RejectsResponse,
    RunDetail,
    RunListResponse,
    RunSummary,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/runs", tags=["Runs"])


async def _get_run(db: AsyncSession, run_id: str) -> PipelineRun:
    result = await db.execute(select(PipelineRun).where(PipelineRun.run_id == run_id))
    run = result.scalar_one_or_none()
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run


@router.get("", response_model=RunListResponse)
async def list_runs(
    limit: int = Query(20, ge=1, le=200, description="Most recent runs to return"),
    state: Optional[PipelineState] = Query(None, description="Filter by run state"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent runs first"""
    query = select(PipelineRun)
    count_query = select(func.count()).select_from(PipelineRun)
    if state is not None:
        query = query.where(PipelineRun.state == state)
        count_query = count_query.where(PipelineRun.state == state)

    result = await db.execute(
        query.order_by(PipelineRun.started_at.desc(), PipelineRun.id.desc()).limit(limit)
    )
    runs = [RunSummary.model_validate(run) for run in result.scalars().all()]
    total = (await db.execute(count_query)).scalar_one()

    return RunListResponse(runs=runs, total=total)


@router.get("/{run_id}", response_model=RunDetail)
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """Run record plus its persisted quality report"""
    run = await _get_run(db, run_id)
    report = await load_report(db, run_id)

    detail = RunDetail.model_validate(run)
    detail.quality_checks = report.results
    return detail


@router.get("/{run_id}/rejects", response_model=RejectsResponse)
async def get_rejects(
    request: Request,
    run_id: str,
    stage: Optional[PipelineState] = Query(None, description="Only rejects from this stage"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    db: AsyncSession = Depends(get_db)
):
    """Paginated rejects of a run, optionally for one stage"""
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    await _get_run(db, run_id)

    filters = [RejectRecord.run_id == run_id]
    if stage is not None:
        filters.append(RejectRecord.stage == stage)

    total_items = (await db.execute(
        select(func.count()).select_from(RejectRecord).where(*filters)
    )).scalar_one()
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

    result = await db.execute(
        select(RejectRecord)
        .where(*filters)
        .order_by(RejectRecord.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [RejectInfo.model_validate(r) for r in result.scalars().all()]

    reasons = await db.execute(
        select(RejectRecord.reason_code, func.count())
        .where(*filters)
        .group_by(RejectRecord.reason_code)
    )

    logger.info(
        f"[{request_id}] GET /runs/{run_id}/rejects - returned {len(items)} of {total_items} "
        f"({(time.time() - start_time) * 1000:.2f}ms)"
    )

    return RejectsResponse(
        run_id=run_id,
        items=items,
        pagination=PaginationMetadata(
            total_items=total_items,
            total_pages=total_pages,
            current_page=page,
            page_size=page_size,
            has_next=page < total_pages,
            has_previous=page > 1,
        ),
        counts_by_reason={code: count for code, count in reasons.all()},
    )
