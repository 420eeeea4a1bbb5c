"""
Pytest configuration and fixtures
"""

from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import Settings
from core.database import create_session_factory, init_models
from core.retry import RetryPolicy
from pipeline.context import RunContext
from pipeline.sources import InMemorySource, SourceReader
from schemas.config import PipelineConfig, load_pipeline_config

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "warehouse.yaml"

EXTRACTED_AT = datetime(2024, 1, 20, 8, 0, 0)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite database per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        MAX_RETRIES=3,
        RETRY_BASE_DELAY_SECONDS=0.001,
        OPERATION_TIMEOUT_SECONDS=10.0,
        ETL_BATCH_SIZE=2,
        STAGE_CONCURRENCY=4,
        FACT_WRITE_CONCURRENCY=2,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, timeout=10.0, base_delay=0.001)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return load_pipeline_config(CONFIG_PATH)


@pytest.fixture
def run_context(pipeline_config, session_factory, test_settings) -> RunContext:
    return RunContext(config=pipeline_config, session_factory=session_factory, settings=test_settings)


# ============================================================================
# Sample extracts
# ============================================================================

def crm_customer_rows() -> List[dict]:
    return [
        {"customer_id": "c1", "name": "Acme Corp", "city": "", "country_code": "us"},
        {"customer_id": "C2", "name": "Globex", "city": "Paris", "country_code": "FR"},
        {"customer_id": "", "name": "No Key Ltd", "city": "oslo", "country_code": "US"},
        {"customer_id": "C3", "name": "Bad Country", "city": "rome", "country_code": "ZZ"},
    ]


def erp_customer_rows() -> List[dict]:
    return [
        {"cust_no": "C1", "customer_name": "ACME Corporation", "city": "Berlin", "country": "DEU"},
    ]


def product_rows() -> List[dict]:
    return [
        {"product_id": "p1", "product_name": "Widget", "category": "hw", "unit_price": "9.99"},
        {"product_id": "P2", "product_name": "Gadget", "category": "software", "unit_price": "abc"},
    ]


def salesrep_rows() -> List[dict]:
    return [
        {"rep_id": "r1", "rep_name": "Dana", "region": "emea"},
    ]


def sales_rows() -> List[dict]:
    return [
        {"order_date": "2024-01-15", "customer_id": "C1", "product_id": "P1", "rep_id": "R1", "quantity": "2", "amount": "19.98"},
        {"order_date": "2024-01-15", "customer_id": "C2", "product_id": "P2", "rep_id": "", "quantity": "1", "amount": "5.00"},
        {"order_date": "2024-01-16", "customer_id": "C1", "product_id": "P999", "rep_id": "R1", "quantity": "1", "amount": "3.00"},
        {"order_date": "2024-01-17", "customer_id": "C2", "product_id": "P1", "rep_id": "R9", "quantity": "3", "amount": "29.97"},
        {"order_date": "2024-13-01", "customer_id": "C1", "product_id": "P1", "rep_id": "R1", "quantity": "1", "amount": "9.99"},
    ]


def make_sources(extracted_at: datetime = EXTRACTED_AT) -> List[SourceReader]:
    return [
        InMemorySource("crm", "customer", crm_customer_rows(), extracted_at),
        InMemorySource("erp", "customer", erp_customer_rows(), extracted_at),
        InMemorySource("erp", "product", product_rows(), extracted_at),
        InMemorySource("crm", "salesrep", salesrep_rows(), extracted_at),
        InMemorySource("erp", "sales", sales_rows(), extracted_at),
    ]


@pytest.fixture
def sources() -> List[SourceReader]:
    return make_sources()


@pytest.fixture
def sample_sources():
    """Factory for the sample extracts at a chosen extraction time"""
    return make_sources
