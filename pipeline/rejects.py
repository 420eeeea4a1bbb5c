"""
Reject output: every row a stage refuses lands here with a reason code.
"""

from typing import Any, Dict, List, Optional
import logging

from pydantic import BaseModel
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import PipelineState, utcnow
from models.reject import RejectRecord
from schemas.records import QuarantinedRecord, RejectedFact, to_jsonable

logger = logging.getLogger(__name__)


class Reject(BaseModel):
    """One rejected row, independent of the stage that produced it."""

    source_system: Optional[str] = None
    entity_type: Optional[str] = None
    row_number: Optional[int] = None
    bronze_id: Optional[int] = None
    original_row: Dict[str, Any]
    reason_code: str
    reason: str

    @classmethod
    def from_quarantined(cls, quarantined: QuarantinedRecord) -> "Reject":
        raw = quarantined.raw
        return cls(
            source_system=raw.source_system,
            entity_type=raw.entity_type,
            row_number=raw.row_number,
            bronze_id=raw.bronze_id,
            original_row=dict(raw.columns),
            reason_code=quarantined.reason_code,
            reason=quarantined.reason,
        )

    @classmethod
    def from_rejected_fact(cls, rejected: RejectedFact) -> "Reject":
        record = rejected.record
        return cls(
            source_system=record.source_system,
            entity_type=record.entity_type,
            row_number=record.row_number,
            bronze_id=record.bronze_id,
            original_row={k: to_jsonable(v) for k, v in record.attributes.items()},
            reason_code=rejected.reason_code,
            reason=rejected.reason,
        )


class RejectWriter:
    """Writes rejects keyed by (run id, stage) within the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.db = session

    async def replace_stage(
        self,
        run_id: str,
        stage: PipelineState,
        rejects: List[Reject]
    ) -> int:
        """
        Replace the rejects of one (run, stage).

        Re-executing a stage therefore leaves exactly one disposition per row.
        The caller commits.
        """
        await self.db.execute(
            delete(RejectRecord).where(
                RejectRecord.run_id == run_id,
                RejectRecord.stage == stage,
            )
        )
        rejected_at = utcnow()
        for reject in rejects:
            self.db.add(RejectRecord(
                run_id=run_id,
                stage=stage,
                rejected_at=rejected_at,
                **reject.model_dump(),
            ))
        await self.db.flush()

        if rejects:
            logger.info(f"Run {run_id}: {len(rejects)} rows rejected at {stage.value}")
        return len(rejects)

    async def count(self, run_id: str, stage: Optional[PipelineState] = None) -> int:
        query = select(func.count(RejectRecord.id)).where(RejectRecord.run_id == run_id)
        if stage is not None:
            query = query.where(RejectRecord.stage == stage)
        result = await self.db.execute(query)
        return result.scalar_one()
