"""
Stage implementations for the pipeline orchestrator.

Every stage reads the previous stage's persisted output for the run and
materializes its own before returning, so a failed run can resume at any
stage boundary. Re-executing a stage replaces its outputs (and its rejects)
for the run id inside one transaction.
"""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple
import logging

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import QualityThresholdBreached
from models.base import PipelineState, RunMode, utcnow
from models.checkpoint import SourceCheckpoint
from models.raw_data import BronzeRawRecord
from models.reject import RejectRecord
from models.silver import SilverCleanRecord, SilverGoldenRecord
from pipeline.catalog import default_quality_checks
from pipeline.conformer import raw_business_key
from pipeline.context import RunContext
from pipeline.quality import persist_report
from pipeline.rejects import Reject, RejectWriter
from pipeline.sources import SourceReader
from schemas.records import CleanRecord, GoldenRecord, RawRecord, to_jsonable

logger = logging.getLogger(__name__)

StageCounts = Dict[str, int]

_INSERT_CHUNK = 500
_KEY_CHUNK = 500


class StageExecutor:
    """Runs one stage of one run; stateless apart from the context."""

    def __init__(self, context: RunContext):
        self.context = context
        self.config = context.config
        self.session_factory = context.session_factory
        self.retry_policy = context.retry_policy

    async def execute(
        self,
        stage: PipelineState,
        run_id: str,
        mode: RunMode,
        sources: List[SourceReader]
    ) -> StageCounts:
        handlers = {
            PipelineState.LOADING: lambda: self.load_bronze(run_id, mode, sources),
            PipelineState.CLEANING: lambda: self.clean(run_id, mode),
            PipelineState.RESOLVING: lambda: self.resolve(run_id),
            PipelineState.KEY_ASSIGNMENT: lambda: self.assign_keys(run_id),
            PipelineState.DIMENSION_LOAD: lambda: self.load_dimensions(run_id),
            PipelineState.FACT_LOAD: lambda: self.load_facts(run_id),
            PipelineState.VALIDATING: lambda: self.validate(run_id),
        }
        return await handlers[stage]()

    # ------------------------------------------------------------------
    # Loading: sources -> Bronze
    # ------------------------------------------------------------------

    async def load_bronze(self, run_id: str, mode: RunMode, sources: List[SourceReader]) -> StageCounts:
        """
        Append raw rows to Bronze.

        Rows whose content hash is already present are skipped, so reloading
        an identical extract appends nothing. Incremental runs also skip rows
        at or below the source's checkpoint watermark.
        """
        counts = {"read": 0, "appended": 0, "duplicates": 0, "skipped": 0}

        for source in sources:
            raws = await source.read()
            counts["read"] += len(raws)

            if mode == RunMode.INCREMENTAL:
                watermark = await self._watermark(source.source_system, source.entity_type)
                if watermark is not None:
                    fresh = [raw for raw in raws if raw.extracted_at > watermark]
                    counts["skipped"] += len(raws) - len(fresh)
                    raws = fresh

            schema = self.config.schema_for(source.source_system, source.entity_type)
            rows = []
            seen: Set[str] = set()
            for raw in raws:
                content_hash = raw.content_hash()
                if content_hash in seen:
                    continue
                seen.add(content_hash)
                rows.append({
                    "source_system": raw.source_system,
                    "entity_type": raw.entity_type,
                    "row_number": raw.row_number,
                    "business_key": raw_business_key(raw, schema),
                    "payload": dict(raw.columns),
                    "extracted_at": raw.extracted_at,
                    "ingested_at": utcnow(),
                    "content_hash": content_hash,
                    "loaded_run_id": run_id,
                })

            appended = 0
            for i in range(0, len(rows), _INSERT_CHUNK):
                chunk = rows[i:i + _INSERT_CHUNK]
                appended += await self.retry_policy.run(
                    lambda: self._append_bronze(chunk),
                    op_name="bronze.append",
                    context={"source_system": source.source_system, "entity_type": source.entity_type}
                )
            counts["appended"] += appended
            counts["duplicates"] += len(raws) - appended

            logger.info(
                f"Run {run_id}: {source.source_system}/{source.entity_type} "
                f"read {len(raws)}, appended {appended} to Bronze"
            )

        return counts

    async def _append_bronze(self, rows: List[Dict[str, Any]]) -> int:
        async with self.session_factory() as session:
            hashes = [row["content_hash"] for row in rows]
            result = await session.execute(
                select(BronzeRawRecord.content_hash).where(BronzeRawRecord.content_hash.in_(hashes))
            )
            existing = set(result.scalars().all())
            missing = [row for row in rows if row["content_hash"] not in existing]
            if missing:
                await session.execute(
                    dialect_insert(session, BronzeRawRecord.__table__)
                    .on_conflict_do_nothing(index_elements=["content_hash"]),
                    missing
                )
                await session.commit()
            return len(missing)

    async def _watermark(self, source_system: str, entity_type: str):
        async with self.session_factory() as session:
            result = await session.execute(
                select(SourceCheckpoint.watermark).where(
                    SourceCheckpoint.source_system == source_system,
                    SourceCheckpoint.entity_type == entity_type,
                )
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Cleaning: Bronze -> Silver
    # ------------------------------------------------------------------

    async def clean(self, run_id: str, mode: RunMode) -> StageCounts:
        raws = await self._bronze_for_run(run_id, mode)
        results = self.context.conformer().conform_many(raws)

        clean = [r.record for r in results if r.accepted]
        rejects = [Reject.from_quarantined(r.quarantined) for r in results if not r.accepted]

        async def replace() -> None:
            async with self.session_factory() as session:
                await session.execute(delete(SilverCleanRecord).where(SilverCleanRecord.run_id == run_id))
                session.add_all([
                    SilverCleanRecord(
                        run_id=run_id,
                        entity_type=record.entity_type,
                        business_key=record.business_key,
                        source_system=record.source_system,
                        extracted_at=record.extracted_at,
                        row_number=record.row_number,
                        bronze_id=record.bronze_id,
                        attributes={k: to_jsonable(v) for k, v in record.attributes.items()},
                        quality_flags=sorted(record.quality_flags),
                    )
                    for record in clean
                ])
                await RejectWriter(session).replace_stage(run_id, PipelineState.CLEANING, rejects)
                await session.commit()

        await self.retry_policy.run(replace, op_name="silver.replace", context={"run_id": run_id})

        logger.info(f"Run {run_id}: cleaned {len(clean)} records, quarantined {len(rejects)}")
        return {"accepted": len(clean), "rejected": len(rejects)}

    async def _bronze_for_run(self, run_id: str, mode: RunMode) -> List[RawRecord]:
        """
        Full mode: every Bronze row.

        Incremental mode: every Bronze row above its source checkpoint, plus
        every Bronze row of any dimension business key those rows touch, so
        survivorship still sees all sources for the key. Rows appended by an
        earlier run that never completed stay above the watermark and are
        picked up here.
        """
        async with self.session_factory() as session:
            if mode == RunMode.FULL:
                result = await session.execute(select(BronzeRawRecord).order_by(BronzeRawRecord.id))
                rows = list(result.scalars().all())
            else:
                result = await session.execute(
                    _joined_checkpoint(select(BronzeRawRecord))
                    .where(_above_watermark())
                    .order_by(BronzeRawRecord.id)
                )
                rows = list(result.scalars().all())
                rows += await self._touched_rows(session, rows)
                rows.sort(key=lambda row: row.id)

        return [
            RawRecord(
                source_system=row.source_system,
                entity_type=row.entity_type,
                extracted_at=row.extracted_at,
                columns=row.payload,
                row_number=row.row_number,
                bronze_id=row.id,
            )
            for row in rows
        ]

    async def _touched_rows(self, session: AsyncSession, new_rows: List[BronzeRawRecord]) -> List[BronzeRawRecord]:
        dimension_types = set(self.config.dimension_entity_types)
        touched: Dict[str, Set[str]] = defaultdict(set)
        for row in new_rows:
            if row.entity_type in dimension_types and row.business_key:
                touched[row.entity_type].add(row.business_key)

        known_ids = {row.id for row in new_rows}
        extra: List[BronzeRawRecord] = []
        for entity_type in sorted(touched):
            keys = sorted(touched[entity_type])
            for i in range(0, len(keys), _KEY_CHUNK):
                result = await session.execute(
                    select(BronzeRawRecord).where(
                        BronzeRawRecord.entity_type == entity_type,
                        BronzeRawRecord.business_key.in_(keys[i:i + _KEY_CHUNK]),
                    )
                )
                for row in result.scalars().all():
                    if row.id not in known_ids:
                        known_ids.add(row.id)
                        extra.append(row)
        return extra

    async def _silver(self, run_id: str, entity_types: List[str]) -> List[CleanRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SilverCleanRecord)
                .where(
                    SilverCleanRecord.run_id == run_id,
                    SilverCleanRecord.entity_type.in_(entity_types),
                )
                .order_by(SilverCleanRecord.id)
            )
            return [
                CleanRecord(
                    entity_type=row.entity_type,
                    business_key=row.business_key,
                    source_system=row.source_system,
                    extracted_at=row.extracted_at,
                    attributes=row.attributes,
                    quality_flags=frozenset(row.quality_flags or []),
                    row_number=row.row_number,
                    bronze_id=row.bronze_id,
                )
                for row in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Resolving: Silver -> golden records
    # ------------------------------------------------------------------

    async def resolve(self, run_id: str) -> StageCounts:
        records = await self._silver(run_id, self.config.dimension_entity_types)
        golden = self.context.resolver().resolve_all(records)

        async def replace() -> None:
            async with self.session_factory() as session:
                await session.execute(delete(SilverGoldenRecord).where(SilverGoldenRecord.run_id == run_id))
                session.add_all([
                    SilverGoldenRecord(
                        run_id=run_id,
                        entity_type=record.entity_type,
                        business_key=record.business_key,
                        attributes={k: to_jsonable(v) for k, v in record.attributes.items()},
                        provenance=record.provenance,
                    )
                    for record in golden
                ])
                await session.commit()

        await self.retry_policy.run(replace, op_name="golden.replace", context={"run_id": run_id})
        return {"accepted": len(golden), "input": len(records)}

    async def _golden(self, run_id: str) -> List[GoldenRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SilverGoldenRecord)
                .where(SilverGoldenRecord.run_id == run_id)
                .order_by(SilverGoldenRecord.entity_type, SilverGoldenRecord.business_key)
            )
            return [
                GoldenRecord(
                    entity_type=row.entity_type,
                    business_key=row.business_key,
                    attributes=row.attributes,
                    provenance=row.provenance,
                )
                for row in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Key assignment and dimension load
    # ------------------------------------------------------------------

    async def assign_keys(self, run_id: str) -> StageCounts:
        golden = await self._golden(run_id)
        semaphore = asyncio.Semaphore(max(1, self.context.settings.STAGE_CONCURRENCY))

        async def assign(record: GoldenRecord) -> int:
            async with semaphore:
                return await self.context.registry.assign_or_get(record.entity_type, record.business_key)

        keys = await asyncio.gather(*(assign(record) for record in golden))
        logger.info(f"Run {run_id}: {len(keys)} surrogate keys assigned or confirmed")
        return {"accepted": len(keys)}

    async def load_dimensions(self, run_id: str) -> StageCounts:
        builder = self.context.dimension_builder()
        seeded = await builder.ensure_unknown_members()
        rows = await builder.upsert_many(
            await self._golden(run_id),
            concurrency=self.context.settings.STAGE_CONCURRENCY,
        )

        counts = {"accepted": len(rows), "inserted": 0, "updated": 0, "unchanged": 0, "unknown_members": seeded}
        for row in rows:
            counts[row.change] += 1
        return counts

    # ------------------------------------------------------------------
    # Fact load
    # ------------------------------------------------------------------

    async def load_facts(self, run_id: str) -> StageCounts:
        records = await self._silver(run_id, self.config.fact_entity_types)
        results = await self.context.fact_loader().load_many(records)

        rejects = [Reject.from_rejected_fact(r.rejected) for r in results if not r.accepted]

        async def replace() -> None:
            async with self.session_factory() as session:
                await RejectWriter(session).replace_stage(run_id, PipelineState.FACT_LOAD, rejects)
                await session.commit()

        await self.retry_policy.run(replace, op_name="rejects.replace", context={"run_id": run_id})

        counts = {"accepted": 0, "rejected": len(rejects), "inserted": 0, "updated": 0, "unchanged": 0, "superseded": 0}
        for result in results:
            if result.accepted:
                counts["accepted"] += 1
                counts[result.row.change] += 1
        return counts

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self, run_id: str) -> StageCounts:
        checks = self.config.quality_checks or default_quality_checks(self.config)
        report = await self.context.quality_validator().validate(None, checks)

        async def store() -> None:
            async with self.session_factory() as session:
                await persist_report(session, run_id, report)
                await session.commit()

        await self.retry_policy.run(store, op_name="quality.persist", context={"run_id": run_id})

        breached = report.breached
        if breached:
            raise QualityThresholdBreached(
                f"{len(breached)} quality checks over threshold",
                context={"run_id": run_id, "breached_checks": [r.name for r in breached]}
            )
        return report.summary()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def advance_checkpoints(self, run_id: str) -> int:
        """
        Move each source's watermark to the newest extraction this run
        cleaned above it. Only called once the run has completed.

        The rows counted are the ones the cleaning stage selected (accepted
        or quarantined), so a watermark never moves past a row no completed
        run has processed.
        """
        async def advance() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    _joined_checkpoint(select(
                        BronzeRawRecord.source_system,
                        BronzeRawRecord.entity_type,
                        func.max(BronzeRawRecord.extracted_at),
                        func.count(BronzeRawRecord.id),
                    ))
                    .where(_above_watermark(), _cleaned_by(run_id))
                    .group_by(BronzeRawRecord.source_system, BronzeRawRecord.entity_type)
                )
                loaded: List[Tuple[str, str, Any, int]] = list(result.all())
                now = utcnow()

                for source_system, entity_type, newest, processed in loaded:
                    checkpoint = await self._checkpoint(session, source_system, entity_type)
                    if checkpoint is None:
                        checkpoint = SourceCheckpoint(
                            source_system=source_system,
                            entity_type=entity_type,
                            total_runs=0,
                            total_records_processed=0,
                        )
                        session.add(checkpoint)
                    if checkpoint.watermark is None or newest > checkpoint.watermark:
                        checkpoint.watermark = newest
                    checkpoint.last_run_id = run_id
                    checkpoint.last_success_at = now
                    checkpoint.total_runs = (checkpoint.total_runs or 0) + 1
                    checkpoint.total_records_processed = (checkpoint.total_records_processed or 0) + processed
                    checkpoint.last_records_processed = processed

                await session.commit()
                return len(loaded)

        advanced = await self.retry_policy.run(advance, op_name="checkpoint.advance", context={"run_id": run_id})
        if advanced:
            logger.info(f"Run {run_id}: advanced {advanced} source checkpoints")
        return advanced

    @staticmethod
    async def _checkpoint(session: AsyncSession, source_system: str, entity_type: str) -> Optional[SourceCheckpoint]:
        result = await session.execute(
            select(SourceCheckpoint).where(
                SourceCheckpoint.source_system == source_system,
                SourceCheckpoint.entity_type == entity_type,
            )
        )
        return result.scalar_one_or_none()


def _joined_checkpoint(query):
    return query.outerjoin(
        SourceCheckpoint,
        and_(
            SourceCheckpoint.source_system == BronzeRawRecord.source_system,
            SourceCheckpoint.entity_type == BronzeRawRecord.entity_type,
        )
    )


def _above_watermark():
    """Bronze rows newer than their source's checkpoint (all rows of a source without one)."""
    return or_(
        SourceCheckpoint.watermark.is_(None),
        BronzeRawRecord.extracted_at > SourceCheckpoint.watermark,
    )


def _cleaned_by(run_id: str):
    return or_(
        BronzeRawRecord.id.in_(
            select(SilverCleanRecord.bronze_id).where(SilverCleanRecord.run_id == run_id)
        ),
        BronzeRawRecord.id.in_(
            select(RejectRecord.bronze_id).where(
                RejectRecord.run_id == run_id,
                RejectRecord.stage == PipelineState.CLEANING,
            )
        ),
    )
