"""
Integration tests for complete pipeline runs
"""

from datetime import datetime

import pytest
from sqlalchemy import func, select

from models.base import PipelineState
from models.checkpoint import SourceCheckpoint
from models.etl_run import PipelineRun
from models.raw_data import BronzeRawRecord
from models.registry import SurrogateKeyMapping
from models.reject import RejectRecord
from models.silver import SilverCleanRecord
from models.warehouse import DimCustomer, DimDate, DimProduct, DimSalesRep, FactSales
from pipeline.catalog import default_quality_checks
from pipeline.runner import EXIT_SUCCESS, PipelineOrchestrator
from pipeline.sources import InMemorySource

GOLD_TABLES = [DimDate, DimCustomer, DimProduct, DimSalesRep, FactSales, SurrogateKeyMapping]


async def snapshot(session_factory):
    """Every Gold row (and the registry), in primary key order"""
    tables = {}
    async with session_factory() as session:
        for model in GOLD_TABLES:
            table = model.__table__
            result = await session.execute(select(table).order_by(*table.primary_key.columns))
            tables[table.name] = [tuple(row) for row in result.all()]
    return tables


async def get_run(session_factory, run_id):
    async with session_factory() as session:
        result = await session.execute(select(PipelineRun).where(PipelineRun.run_id == run_id))
        return result.scalar_one()


async def count(session_factory, model, *where):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


@pytest.mark.asyncio
async def test_full_pipeline_run(run_context, sources, session_factory):
    """
    Integration test: Bronze -> Silver -> Gold -> Validate
    """
    orchestrator = PipelineOrchestrator(run_context)

    status = await orchestrator.run("run-1", sources)

    assert status == EXIT_SUCCESS

    # Run record
    run = await get_run(session_factory, "run-1")
    assert run.state == PipelineState.COMPLETED
    assert run.last_completed_stage == PipelineState.VALIDATING
    assert run.exit_code == 0
    assert run.attempts == 1
    assert run.stage_counts["loading"] == {"read": 13, "appended": 13, "duplicates": 0, "skipped": 0}
    assert run.stage_counts["cleaning"] == {"accepted": 10, "rejected": 3}
    assert run.stage_counts["resolving"]["accepted"] == 5
    assert run.stage_counts["dimension_load"]["inserted"] == 5
    assert run.stage_counts["fact_load"]["inserted"] == 3
    assert run.stage_counts["fact_load"]["rejected"] == 1
    assert run.stage_counts["validating"]["breached"] == 0

    async with session_factory() as session:
        customers = {
            c.business_customer_id: c
            for c in (await session.execute(select(DimCustomer))).scalars().all()
        }
        products = {
            p.business_product_id: p
            for p in (await session.execute(select(DimProduct))).scalars().all()
        }
        facts = (await session.execute(select(FactSales).order_by(FactSales.date_key))).scalars().all()

    # Survivorship: CRM wins name, ERP fills the city CRM lacks and wins country
    assert set(customers) == {"UNKNOWN", "C1", "C2"}
    assert customers["C1"].customer_name == "Acme Corp"
    assert customers["C1"].city == "Berlin"
    assert customers["C1"].country == "DE"
    assert customers["UNKNOWN"].customer_key == -1

    assert products["P1"].category == "Hardware"
    assert products["P2"].unit_price is None

    # Optional sales rep falls back to the unknown member
    assert len(facts) == 3
    assert [f.sales_rep_key for f in facts].count(-1) == 2
    assert {f.date_key for f in facts} == {20240115, 20240117}


@pytest.mark.asyncio
async def test_quarantine_completeness(run_context, sources, session_factory):
    """Every raw row ends up in exactly one of Silver or the rejects"""
    await PipelineOrchestrator(run_context).run("run-1", sources)

    bronze = await count(session_factory, BronzeRawRecord)
    silver = await count(session_factory, SilverCleanRecord, SilverCleanRecord.run_id == "run-1")
    cleaning_rejects = await count(
        session_factory, RejectRecord,
        RejectRecord.run_id == "run-1", RejectRecord.stage == PipelineState.CLEANING
    )
    assert bronze == 13
    assert silver + cleaning_rejects == bronze

    silver_sales = await count(
        session_factory, SilverCleanRecord,
        SilverCleanRecord.run_id == "run-1", SilverCleanRecord.entity_type == "sales"
    )
    async with session_factory() as session:
        fact_rejects = (await session.execute(
            select(RejectRecord).where(RejectRecord.run_id == "run-1", RejectRecord.stage == PipelineState.FACT_LOAD)
        )).scalars().all()
        reasons = sorted((await session.execute(
            select(RejectRecord.reason_code).where(RejectRecord.stage == PipelineState.CLEANING)
        )).scalars().all())

    assert silver_sales == 4
    assert len(fact_rejects) == 1
    assert fact_rejects[0].reason == "unresolved foreign key ProductKey"
    assert fact_rejects[0].original_row["product"] == "P999"
    assert reasons == ["INVALID_TYPE", "MISSING_BUSINESS_KEY", "UNMAPPED_CODE"]
    assert await count(session_factory, FactSales) == 3


@pytest.mark.asyncio
async def test_second_identical_run_is_byte_identical(run_context, sample_sources, session_factory):
    """Re-running the same input under a new run id changes no Gold row"""
    orchestrator = PipelineOrchestrator(run_context)

    assert await orchestrator.run("run-1", sample_sources()) == EXIT_SUCCESS
    first = await snapshot(session_factory)

    assert await orchestrator.run("run-2", sample_sources()) == EXIT_SUCCESS
    second = await snapshot(session_factory)

    assert second == first

    run = await get_run(session_factory, "run-2")
    assert run.stage_counts["loading"]["appended"] == 0
    assert run.stage_counts["loading"]["duplicates"] == 13
    assert run.stage_counts["dimension_load"]["unchanged"] == 5
    assert run.stage_counts["fact_load"]["unchanged"] == 3
    assert await count(session_factory, BronzeRawRecord) == 13


@pytest.mark.asyncio
async def test_referential_integrity_holds(run_context, sources, session_factory):
    """Every fact reference resolves to a dimension row or its sentinel"""
    await PipelineOrchestrator(run_context).run("run-1", sources)

    report = await run_context.quality_validator().validate(None, default_quality_checks(run_context.config))

    assert report.passed


@pytest.mark.asyncio
async def test_customer_merge_across_sources(run_context, session_factory):
    """CRM and ERP records for one customer become a single dimension row"""
    extracted_at = datetime(2024, 1, 10)
    sources = [
        InMemorySource("crm", "customer", [
            {"customer_id": "101", "name": "Jane Doe", "city": "NYC", "country_code": ""},
        ], extracted_at),
        InMemorySource("erp", "customer", [
            {"cust_no": "101", "customer_name": "J. Doe", "city": "", "country": "US"},
        ], extracted_at),
    ]

    assert await PipelineOrchestrator(run_context).run("run-a", sources) == EXIT_SUCCESS

    async with session_factory() as session:
        row = (await session.execute(
            select(DimCustomer).where(DimCustomer.business_customer_id == "101")
        )).scalar_one()
    assert (row.customer_name, row.city, row.country) == ("Jane Doe", "NYC", "US")
    assert await count(session_factory, DimCustomer, DimCustomer.customer_key != -1) == 1


@pytest.mark.asyncio
async def test_same_sale_loaded_twice(run_context, session_factory):
    """Loading a sale in two runs leaves one fact row for its grain"""
    def sources(extracted_at):
        return [
            InMemorySource("crm", "customer", [
                {"customer_id": "101", "name": "Jane Doe", "city": "NYC", "country_code": "US"},
            ], extracted_at),
            InMemorySource("erp", "product", [
                {"product_id": "55", "product_name": "Widget", "category": "hw", "unit_price": "50"},
            ], extracted_at),
            InMemorySource("erp", "sales", [
                {"order_date": "2024-01-05", "customer_id": "101", "product_id": "55",
                 "rep_id": "", "quantity": "2", "amount": "100.0"},
            ], extracted_at),
        ]

    orchestrator = PipelineOrchestrator(run_context)
    assert await orchestrator.run("run-b1", sources(datetime(2024, 1, 6))) == EXIT_SUCCESS
    assert await orchestrator.run("run-b2", sources(datetime(2024, 1, 7))) == EXIT_SUCCESS

    async with session_factory() as session:
        facts = (await session.execute(select(FactSales))).scalars().all()
    assert len(facts) == 1
    assert facts[0].date_key == 20240105
    assert facts[0].amount == 100.0


@pytest.mark.asyncio
async def test_cleared_attribute_reaches_dimension(run_context, session_factory):
    """A later extract that empties an attribute clears it in the dimension"""
    def crm(city, extracted_at):
        return [InMemorySource("crm", "customer", [
            {"customer_id": "C9", "name": "Initech", "city": city, "country_code": "US"},
        ], extracted_at)]

    orchestrator = PipelineOrchestrator(run_context)
    assert await orchestrator.run("run-c1", crm("NYC", datetime(2024, 1, 1))) == EXIT_SUCCESS
    assert await orchestrator.run("run-c2", crm("", datetime(2024, 2, 1))) == EXIT_SUCCESS

    async with session_factory() as session:
        row = (await session.execute(
            select(DimCustomer).where(DimCustomer.business_customer_id == "C9")
        )).scalar_one()
    assert row.city is None
    assert row.customer_name == "Initech"
    assert row.row_version == 2


@pytest.mark.asyncio
async def test_reserved_business_key_is_quarantined(run_context, session_factory):
    """A source key equal to the unknown member's key is rejected, not merged into it"""
    sources = [
        InMemorySource("crm", "customer", [
            {"customer_id": "unknown", "name": "Mystery Ltd", "city": "Oslo", "country_code": "US"},
            {"customer_id": "C1", "name": "Acme Corp", "city": "Berlin", "country_code": "DE"},
        ], datetime(2024, 1, 10)),
    ]

    assert await PipelineOrchestrator(run_context).run("run-u", sources) == EXIT_SUCCESS

    async with session_factory() as session:
        sentinel = (await session.execute(
            select(DimCustomer).where(DimCustomer.business_customer_id == "UNKNOWN")
        )).scalar_one()
        rejects = (await session.execute(
            select(RejectRecord).where(RejectRecord.run_id == "run-u")
        )).scalars().all()

    assert sentinel.customer_key == -1
    assert sentinel.customer_name is None
    assert [r.reason_code for r in rejects] == ["RESERVED_BUSINESS_KEY"]
    assert rejects[0].original_row["name"] == "Mystery Ltd"


@pytest.mark.asyncio
async def test_checkpoints_advance_on_completion(run_context, sources, session_factory):
    await PipelineOrchestrator(run_context).run("run-1", sources)

    async with session_factory() as session:
        checkpoints = (await session.execute(select(SourceCheckpoint))).scalars().all()

    assert len(checkpoints) == 5
    assert {c.watermark for c in checkpoints} == {datetime(2024, 1, 20, 8, 0, 0)}
    assert all(c.last_run_id == "run-1" for c in checkpoints)
