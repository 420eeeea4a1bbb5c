"""
Quality Validator: read-only invariant checks over warehouse tables.

Check kinds:
- unique_business_key: no business key value appears twice
- referential_integrity: every key resolves in the reference table
  (the unknown-member sentinel counts as resolved)
- not_null: column has no nulls
- range: non-null values fall within [min_value, max_value]

A check fails when it finds any offending row. Failures at or under the
check's threshold are advisory; above it the check is ``breached`` and the
orchestrator fails the run.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import ValidationError
from core.retry import RetryPolicy
from models.base import CheckStatus, utcnow
from models.quality import QualityCheckResult
from pipeline.catalog import get_table, reference_key_column
from schemas.config import CheckKind, QualityCheckConfig
from schemas.quality import CheckResult, QualityReport
from schemas.records import to_jsonable

logger = logging.getLogger(__name__)


class QualityValidator:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    async def validate(
        self,
        table: Optional[str],
        checks: List[QualityCheckConfig]
    ) -> QualityReport:
        """
        Run the checks that target ``table`` (all checks when ``table`` is None).

        Never writes.
        """
        selected = [c for c in checks if table is None or c.table == table]
        results = []
        for check in selected:
            failed_count, sample = await self.retry_policy.run(
                lambda: self._run_check(check),
                op_name="quality.check",
                context={"check": check.name, "table": check.table}
            )
            results.append(self._result(check, failed_count, sample))

        report = QualityReport(results=results)
        logger.info(f"Quality validation: {report.summary()}")
        return report

    @staticmethod
    def _result(check: QualityCheckConfig, failed_count: int, sample: List[Dict[str, Any]]) -> CheckResult:
        if failed_count == 0:
            status = CheckStatus.PASSED
        elif check.threshold is None or failed_count <= check.threshold:
            status = CheckStatus.FAILED
        else:
            status = CheckStatus.BREACHED

        if status != CheckStatus.PASSED:
            error = ValidationError(
                f"Quality check {check.name} found {failed_count} failing rows",
                context={"check": check.name, "table": check.table, "threshold": check.threshold}
            )
            logger.warning(str(error), extra={"error_context": error.to_dict()})

        return CheckResult(
            name=check.name,
            kind=check.kind.value,
            table=check.table,
            status=status,
            failed_count=failed_count,
            threshold=check.threshold,
            sample=sample,
        )

    async def _run_check(self, check: QualityCheckConfig) -> Tuple[int, List[Dict[str, Any]]]:
        table = get_table(check.table)

        async with self.session_factory() as session:
            if check.kind == CheckKind.UNIQUE_BUSINESS_KEY:
                return await self._duplicates(session, table, check)

            column = table.c[check.column]

            if check.kind == CheckKind.REFERENTIAL_INTEGRITY:
                reference = get_table(check.reference_table)
                reference_column = reference.c[check.reference_column or reference_key_column(reference.name)]
                resolved = select(reference_column).where(reference_column.isnot(None))
                condition = or_(column.is_(None), column.not_in(resolved))
                if check.sentinel_key is not None:
                    condition = and_(condition, or_(column.is_(None), column != check.sentinel_key))
            elif check.kind == CheckKind.NOT_NULL:
                condition = column.is_(None)
            else:
                bounds = []
                if check.min_value is not None:
                    bounds.append(column < check.min_value)
                if check.max_value is not None:
                    bounds.append(column > check.max_value)
                condition = and_(column.isnot(None), or_(*bounds))

            failed_count = (await session.execute(
                select(func.count()).select_from(table).where(condition)
            )).scalar_one()

            sample: List[Dict[str, Any]] = []
            if failed_count and check.sample_size:
                rows = await session.execute(
                    select(table).where(condition)
                    .order_by(*table.primary_key.columns)
                    .limit(check.sample_size)
                )
                sample = [{k: to_jsonable(v) for k, v in row.items()} for row in rows.mappings().all()]

            return failed_count, sample

    @staticmethod
    async def _duplicates(session: AsyncSession, table, check: QualityCheckConfig) -> Tuple[int, List[Dict[str, Any]]]:
        column = table.c[check.column]
        duplicated = (
            select(column.label("value"), func.count().label("occurrences"))
            .where(column.isnot(None))
            .group_by(column)
            .having(func.count() > 1)
            .subquery()
        )

        failed_count = (await session.execute(
            select(func.coalesce(func.sum(duplicated.c.occurrences), 0))
        )).scalar_one()

        sample: List[Dict[str, Any]] = []
        if failed_count and check.sample_size:
            rows = await session.execute(
                select(duplicated).order_by(duplicated.c.value).limit(check.sample_size)
            )
            sample = [
                {check.column: to_jsonable(value), "occurrences": occurrences}
                for value, occurrences in rows.all()
            ]

        return int(failed_count), sample


async def persist_report(session: AsyncSession, run_id: str, report: QualityReport) -> None:
    """Replace the run's stored quality results; the caller commits."""
    await session.execute(delete(QualityCheckResult).where(QualityCheckResult.run_id == run_id))
    checked_at = utcnow()
    for result in report.results:
        session.add(QualityCheckResult(
            run_id=run_id,
            check_name=result.name,
            kind=result.kind,
            table_name=result.table,
            status=result.status,
            failed_count=result.failed_count,
            threshold=result.threshold,
            sample=result.sample,
            checked_at=checked_at,
        ))
    await session.flush()


async def load_report(session: AsyncSession, run_id: str) -> QualityReport:
    result = await session.execute(
        select(QualityCheckResult)
        .where(QualityCheckResult.run_id == run_id)
        .order_by(QualityCheckResult.id)
    )
    return QualityReport(results=[
        CheckResult(
            name=row.check_name,
            kind=row.kind,
            table=row.table_name,
            status=row.status,
            failed_count=row.failed_count,
            threshold=row.threshold,
            sample=row.sample or [],
        )
        for row in result.scalars().all()
    ])
