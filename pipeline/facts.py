"""
Fact Loader: resolve business keys to surrogate keys and upsert fact rows.

Resolution is read-only against the dimension tables (whose keys are the
registry's keys); a fact never allocates a key. Required references that do
not resolve reject the row; optional ones fall back to the dimension's
unknown-member key.
"""

import asyncio
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import ConcurrencyConflict, ConfigurationError, ReferentialError
from core.retry import RetryPolicy
from models.base import utcnow
from pipeline.catalog import DimensionTable, FactTable, dimension_table, fact_table
from pipeline.conformer import key_part
from pipeline.dimensions import DimensionBuilder, date_key
from schemas.config import FactConfig, PipelineConfig
from schemas.records import CleanRecord, FactLoadResult, FactRow, RejectedFact

logger = logging.getLogger(__name__)

_LOOKUP_CHUNK = 500


def parse_date(value: Any) -> Optional[date]:
    """Date attribute as a date; accepts date, datetime or an ISO string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class FactLoader:
    """
    Load fact records at their grain.

    Key lookups are cached for the life of the loader, which the orchestrator
    scopes to one run. References resolve against the dimension tables, not
    the key registry, so a fact can only point at a member that was actually
    loaded; the unknown-member row is never a lookup target.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: PipelineConfig,
        dimensions: Optional[DimensionBuilder] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 500,
        write_concurrency: int = 4
    ):
        self.session_factory = session_factory
        self.config = config
        self.dimensions = dimensions
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.batch_size = max(1, batch_size)
        self.write_concurrency = max(1, write_concurrency)
        self._keys: Dict[Tuple[str, str], Optional[int]] = {}

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, record: CleanRecord) -> FactLoadResult:
        """Resolve one record to a FactRow (or a rejection) without writing."""
        fact = self._fact_config(record.entity_type)
        try:
            return FactLoadResult(row=await self._resolve(fact, record))
        except ReferentialError as e:
            logger.info(
                f"Rejected {record.source_system}/{record.entity_type} row {record.row_number}: {e.message}"
            )
            return FactLoadResult(rejected=RejectedFact(
                record=record,
                reason_code=e.reason_code,
                reason=e.message,
            ))

    async def _resolve(self, fact: FactConfig, record: CleanRecord) -> FactRow:
        grain: Dict[str, int] = {}

        day = parse_date(record.attributes.get(fact.date_attribute))
        if day is None:
            raise ReferentialError(
                f"unresolved foreign key {fact.date_column}",
                context={"reference": fact.date_column, "value": record.attributes.get(fact.date_attribute)}
            )
        grain[fact.date_column] = date_key(day)

        for reference in fact.references:
            value = record.attributes.get(reference.attribute)
            business_key = key_part(value) if value is not None else None
            surrogate_key = await self.lookup(reference.entity_type, business_key) if business_key else None

            if surrogate_key is None:
                if reference.required:
                    raise ReferentialError(
                        f"unresolved foreign key {reference.name}",
                        context={"reference": reference.name, "business_key": business_key}
                    )
                surrogate_key = self.config.dimension(reference.entity_type).unknown_member_key

            grain[reference.name] = surrogate_key

        measures = {
            column: _measure(record.attributes.get(attribute))
            for attribute, column in fact.measures.items()
        }
        return FactRow(table=fact.table, grain=grain, measures=measures)

    async def lookup(self, entity_type: str, business_key: str) -> Optional[int]:
        cache_key = (entity_type, business_key)
        if cache_key not in self._keys:
            await self.prefetch(entity_type, [business_key])
        return self._keys[cache_key]

    async def prefetch(self, entity_type: str, business_keys: Iterable[str]) -> None:
        """Warm the key cache for many business keys with chunked reads."""
        missing = sorted({bk for bk in business_keys if bk and (entity_type, bk) not in self._keys})
        if not missing:
            return

        dimension = self.config.dimension(entity_type)
        if dimension is None:
            raise ConfigurationError(
                f"Fact references unknown dimension {entity_type}",
                context={"entity_type": entity_type}
            )
        layout = dimension_table(dimension)

        for i in range(0, len(missing), _LOOKUP_CHUNK):
            chunk = missing[i:i + _LOOKUP_CHUNK]
            found = await self.retry_policy.run(
                lambda: self._select_keys(layout, dimension.unknown_member_key, chunk),
                op_name="fact.lookup",
                context={"table": layout.name, "keys": len(chunk)}
            )
            for business_key in chunk:
                self._keys[(entity_type, business_key)] = found.get(business_key)

    async def _select_keys(self, layout: DimensionTable, unknown_key: int, chunk: List[str]) -> Dict[str, int]:
        table = layout.table
        async with self.session_factory() as session:
            result = await session.execute(
                select(table.c[layout.business_key_column], table.c[layout.key_column])
                .where(table.c[layout.business_key_column].in_(chunk), table.c[layout.key_column] != unknown_key)
            )
            return {business_key: key for business_key, key in result.all()}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, record: CleanRecord) -> FactLoadResult:
        """Resolve and upsert a single record."""
        results = await self.load_many([record])
        return results[0]

    async def load_many(self, records: List[CleanRecord]) -> List[FactLoadResult]:
        """
        Resolve every record, collapse duplicate grains, then upsert in
        batches with bounded concurrency.

        When two records land on the same grain the one with the latest
        extraction timestamp wins (then source system, row number and finally
        the Bronze row id);
        the others come back with ``change="superseded"``.

        Returns:
            One FactLoadResult per input record, in input order
        """
        await self._prefetch_references(records)
        results = [await self.resolve(record) for record in records]

        winners: Dict[Tuple[str, tuple], int] = {}
        for index, result in enumerate(results):
            if not result.accepted:
                continue
            grain = (result.row.table, result.row.grain_key)
            incumbent = winners.get(grain)
            if incumbent is None or _precedence(records[index]) > _precedence(records[incumbent]):
                winners[grain] = index

        for index, result in enumerate(results):
            if result.accepted and winners[(result.row.table, result.row.grain_key)] != index:
                result.row.change = "superseded"

        rows_by_table: Dict[str, List[FactRow]] = defaultdict(list)
        for index in sorted(winners.values(), key=lambda i: (results[i].row.table, results[i].row.grain_key)):
            rows_by_table[results[index].row.table].append(results[index].row)

        if self.dimensions is not None:
            fact_configs = {f.table: f for f in self.config.facts}
            dates = [
                _date_from_key(row.grain[fact_configs[table].date_column])
                for table, rows in rows_by_table.items()
                for row in rows
            ]
            await self.dimensions.build_date_dimension(dates)

        for table_name, rows in rows_by_table.items():
            await self._write(fact_table(self._fact_by_table(table_name)), rows)

        accepted = sum(1 for r in results if r.accepted)
        logger.info(
            f"Fact load: {accepted} accepted ({len(winners)} distinct grains), "
            f"{len(results) - accepted} rejected"
        )
        return results

    async def _prefetch_references(self, records: List[CleanRecord]) -> None:
        wanted: Dict[str, set] = defaultdict(set)
        for record in records:
            fact = self.config.fact(record.entity_type)
            if fact is None:
                continue
            for reference in fact.references:
                value = record.attributes.get(reference.attribute)
                if value is not None:
                    wanted[reference.entity_type].add(key_part(value))
        for entity_type in sorted(wanted):
            await self.prefetch(entity_type, wanted[entity_type])

    async def _write(self, layout: FactTable, rows: List[FactRow]) -> None:
        semaphore = asyncio.Semaphore(self.write_concurrency)
        batches = [rows[i:i + self.batch_size] for i in range(0, len(rows), self.batch_size)]

        async def write_batch(batch_number: int, batch: List[FactRow]) -> None:
            async with semaphore:
                changes = await self.retry_policy.run(
                    lambda: self._write_batch(layout, batch),
                    op_name="fact.write_batch",
                    context={"table": layout.name, "batch": batch_number, "rows": len(batch)}
                )
            for row in batch:
                row.change = changes[row.grain_key]
            logger.info(f"{layout.name} batch {batch_number}: wrote {len(batch)} rows")

        await asyncio.gather(*(write_batch(n, batch) for n, batch in enumerate(batches, start=1)))

    async def _write_batch(self, layout: FactTable, batch: List[FactRow]) -> Dict[tuple, str]:
        table = layout.table
        grain_columns = list(batch[0].grain)
        measure_columns = list(batch[0].measures)

        async with self.session_factory() as session:
            matches = or_(*(
                and_(*(table.c[column] == row.grain[column] for column in grain_columns))
                for row in batch
            ))
            result = await session.execute(select(table).where(matches))
            existing = {
                tuple(current[column] for column in grain_columns): current
                for current in result.mappings().all()
            }

            now = utcnow()
            changes: Dict[tuple, str] = {}
            inserts: List[Dict[str, Any]] = []

            for row in batch:
                current = existing.get(row.grain_key)
                if current is None:
                    inserts.append({**row.grain, **row.measures, layout.timestamp_column: now})
                    changes[row.grain_key] = "inserted"
                elif any(current[column] != row.measures[column] for column in measure_columns):
                    await session.execute(
                        update(table)
                        .where(*(table.c[column] == row.grain[column] for column in grain_columns))
                        .values({**row.measures, layout.timestamp_column: now})
                    )
                    changes[row.grain_key] = "updated"
                else:
                    changes[row.grain_key] = "unchanged"

            try:
                if inserts:
                    await session.execute(insert(table), inserts)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConcurrencyConflict(
                    f"{layout.name} grain inserted concurrently",
                    context={"table": layout.name, "rows": len(batch)},
                    original_exception=e
                )

        return changes

    def _fact_config(self, entity_type: str) -> FactConfig:
        fact = self.config.fact(entity_type)
        if fact is None:
            raise ConfigurationError(
                f"No fact configured for entity type {entity_type}",
                context={"entity_type": entity_type}
            )
        return fact

    def _fact_by_table(self, table_name: str) -> FactConfig:
        for fact in self.config.facts:
            if fact.table == table_name:
                return fact
        raise ConfigurationError(f"No fact configured for table {table_name}", context={"table": table_name})


def _measure(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _precedence(record: CleanRecord) -> tuple:
    return (record.extracted_at, record.source_system, record.row_number, record.bronze_id or 0)


def _date_from_key(key: int) -> date:
    return date(key // 10000, key // 100 % 100, key % 100)
