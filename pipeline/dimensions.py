"""
Dimension Builder: upsert golden records into type-1 dimension tables.

Read-modify-write per member:
- insert when the surrogate key has no row yet
- overwrite attributes (LastUpdated, RowVersion + 1) when they differ
- no write at all when they are identical

Same-key upserts serialize on a keyed lock in this process; across processes
the UPDATE is guarded by RowVersion and a lost race is retried.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

import pandas as pd
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.database import dialect_insert
from core.exceptions import ConcurrencyConflict, ConfigurationError, DatabaseError
from core.retry import RetryPolicy
from models.base import utcnow
from pipeline.catalog import DATE_DIMENSION, UNKNOWN_BUSINESS_KEY, DimensionTable, dimension_table
from pipeline.locks import KeyedLock
from pipeline.registry import SurrogateKeyRegistry
from schemas.config import PipelineConfig
from schemas.records import DimensionRow, GoldenRecord, to_jsonable

logger = logging.getLogger(__name__)

_DATE_CHUNK = 500


def date_key(value: date) -> int:
    """Smart DimDate key: YYYYMMDD."""
    return value.year * 10000 + value.month * 100 + value.day


class DimensionBuilder:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: PipelineConfig,
        registry: SurrogateKeyRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.session_factory = session_factory
        self.config = config
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._locks = locks or KeyedLock()

    async def upsert(self, golden: GoldenRecord) -> DimensionRow:
        """
        Upsert one golden record.

        Idempotent: a second call with the same record performs no write and
        returns ``change="unchanged"``.

        Raises:
            ConfigurationError: No dimension configured for the entity type
            FatalError: Persistence kept failing past the retry budget
        """
        dimension = self.config.dimension(golden.entity_type)
        if dimension is None:
            raise ConfigurationError(
                f"No dimension configured for entity type {golden.entity_type}",
                context={"entity_type": golden.entity_type}
            )
        layout = dimension_table(dimension)

        surrogate_key = await self.registry.assign_or_get(golden.entity_type, golden.business_key)
        values = {
            column: to_jsonable(golden.attributes.get(attribute))
            for attribute, column in layout.attribute_columns.items()
        }

        async with self._locks.hold((layout.name, surrogate_key)):
            row = await self.retry_policy.run(
                lambda: self._write(layout, surrogate_key, golden.business_key, values),
                op_name="dimension.upsert",
                context={
                    "table": layout.name,
                    "business_key": golden.business_key,
                    "surrogate_key": surrogate_key,
                }
            )

        return DimensionRow(
            entity_type=golden.entity_type,
            surrogate_key=surrogate_key,
            business_key=golden.business_key,
            attributes={attribute: golden.attributes.get(attribute) for attribute in layout.attribute_columns},
            last_updated=row["last_updated"],
            row_version=row["row_version"],
            change=row["change"],
        )

    async def upsert_many(
        self,
        golden_records: Iterable[GoldenRecord],
        concurrency: int = 8
    ) -> List[DimensionRow]:
        """Upsert with bounded concurrency; results keep input order."""
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def bounded(golden: GoldenRecord) -> DimensionRow:
            async with semaphore:
                return await self.upsert(golden)

        rows = await asyncio.gather(*(bounded(g) for g in golden_records))

        changes = {"inserted": 0, "updated": 0, "unchanged": 0}
        for row in rows:
            changes[row.change] += 1
        logger.info(
            f"Dimension upsert: {changes['inserted']} inserted, "
            f"{changes['updated']} updated, {changes['unchanged']} unchanged"
        )
        return list(rows)

    async def _write(
        self,
        layout: DimensionTable,
        surrogate_key: int,
        business_key: str,
        values: Dict[str, Any]
    ) -> Dict[str, Any]:
        table = layout.table
        key_column = table.c[layout.key_column]
        version_column = table.c[layout.version_column]

        async with self.session_factory() as session:
            result = await session.execute(select(table).where(key_column == surrogate_key))
            current = result.mappings().one_or_none()
            now = utcnow()

            if current is None:
                try:
                    await session.execute(insert(table).values({
                        layout.key_column: surrogate_key,
                        layout.business_key_column: business_key,
                        layout.timestamp_column: now,
                        layout.version_column: 1,
                        **values,
                    }))
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    holder = await session.execute(
                        select(key_column).where(table.c[layout.business_key_column] == business_key)
                    )
                    holder_key = holder.scalar_one_or_none()
                    if holder_key is not None and holder_key != surrogate_key:
                        # business key already held by another member; retrying cannot help
                        raise DatabaseError(
                            f"{layout.name} business key {business_key} belongs to row {holder_key}",
                            context={
                                "operation": "INSERT",
                                "table_name": layout.name,
                                "surrogate_key": surrogate_key,
                                "business_key": business_key,
                            },
                            original_exception=e
                        )
                    raise ConcurrencyConflict(
                        f"{layout.name} row {surrogate_key} was inserted concurrently",
                        context={"table": layout.name, "surrogate_key": surrogate_key},
                        original_exception=e
                    )
                return {"change": "inserted", "last_updated": now, "row_version": 1}

            unchanged = current[layout.business_key_column] == business_key and all(
                current[column] == value for column, value in values.items()
            )
            if unchanged:
                return {
                    "change": "unchanged",
                    "last_updated": current[layout.timestamp_column],
                    "row_version": current[layout.version_column],
                }

            expected_version = current[layout.version_column]
            result = await session.execute(
                update(table)
                .where(key_column == surrogate_key, version_column == expected_version)
                .values({
                    layout.business_key_column: business_key,
                    layout.timestamp_column: now,
                    layout.version_column: expected_version + 1,
                    **values,
                })
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrencyConflict(
                    f"{layout.name} row {surrogate_key} changed underneath us",
                    context={
                        "table": layout.name,
                        "surrogate_key": surrogate_key,
                        "expected_version": expected_version,
                    }
                )
            await session.commit()
            return {"change": "updated", "last_updated": now, "row_version": expected_version + 1}

    async def ensure_unknown_members(self) -> int:
        """
        Seed one sentinel row per configured dimension.

        Optional fact references that do not resolve point at this row, so
        referential integrity holds without a real member.
        """
        seeded = 0
        for dimension in self.config.dimensions:
            layout = dimension_table(dimension)
            seeded += await self.retry_policy.run(
                lambda: self._seed_unknown(layout, dimension.unknown_member_key),
                op_name="dimension.ensure_unknown_members",
                context={"table": layout.name}
            )
        if seeded:
            logger.info(f"Seeded {seeded} unknown-member rows")
        return seeded

    async def _seed_unknown(self, layout: DimensionTable, unknown_key: int) -> int:
        async with self.session_factory() as session:
            stmt = dialect_insert(session, layout.table).values({
                layout.key_column: unknown_key,
                layout.business_key_column: UNKNOWN_BUSINESS_KEY,
                layout.timestamp_column: datetime(1900, 1, 1),
                layout.version_column: 1,
            }).on_conflict_do_nothing()
            result = await session.execute(stmt)
            await session.commit()
            return max(result.rowcount, 0)

    async def build_date_dimension(self, dates: Iterable[date]) -> int:
        """
        Insert the DimDate rows missing for ``dates``.

        Calendar attributes come from pandas; existing rows are never touched.

        Returns:
            Number of rows inserted
        """
        wanted = sorted({d.date() if isinstance(d, datetime) else d for d in dates if d is not None})
        if not wanted:
            return 0

        inserted = 0
        for i in range(0, len(wanted), _DATE_CHUNK):
            rows = calendar_rows(wanted[i:i + _DATE_CHUNK])
            inserted += await self.retry_policy.run(
                lambda: self._insert_dates(rows),
                op_name="dimension.build_date_dimension",
                context={"dates": len(rows)}
            )

        if inserted:
            logger.info(f"Added {inserted} rows to {DATE_DIMENSION.name}")
        return inserted

    async def _insert_dates(self, rows: List[Dict[str, Any]]) -> int:
        key_column = DATE_DIMENSION.c.DateKey
        async with self.session_factory() as session:
            result = await session.execute(
                select(key_column).where(key_column.in_([row["DateKey"] for row in rows]))
            )
            existing = set(result.scalars().all())
            missing = [row for row in rows if row["DateKey"] not in existing]
            if missing:
                await session.execute(
                    dialect_insert(session, DATE_DIMENSION).on_conflict_do_nothing(),
                    missing
                )
                await session.commit()
            return len(missing)


def calendar_rows(dates: List[date]) -> List[Dict[str, Any]]:
    """DimDate rows for the given dates."""
    index = pd.DatetimeIndex(pd.to_datetime(dates))
    frame = pd.DataFrame({
        "Date": dates,
        "Year": index.year,
        "Quarter": index.quarter,
        "Month": index.month,
        "Day": index.day,
        "MonthName": index.month_name(),
        "DayName": index.day_name(),
    })
    return [
        {
            "DateKey": date_key(row.Date),
            "Date": row.Date,
            "Year": int(row.Year),
            "Quarter": int(row.Quarter),
            "Month": int(row.Month),
            "Day": int(row.Day),
            "MonthName": str(row.MonthName),
            "DayName": str(row.DayName),
        }
        for row in frame.itertuples(index=False)
    ]
