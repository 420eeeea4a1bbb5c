"""
API endpoint tests
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_db
from api.main import app
from pipeline.runner import PipelineOrchestrator


@pytest_asyncio.fixture
async def client(session_factory):
    """Create test client with database override"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def completed_run(run_context, sources):
    assert await PipelineOrchestrator(run_context).run("run-1", sources) == 0
    return "run-1"


@pytest.mark.asyncio
async def test_root_endpoint(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["rejects"] == "/runs/{run_id}/rejects"


@pytest.mark.asyncio
async def test_health_endpoint_empty_database(client):
    """Test health endpoint before any run"""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["last_run_id"] is None
    assert data["checkpoints"] == []


@pytest.mark.asyncio
async def test_health_endpoint_after_run(client, completed_run):
    data = (await client.get("/health")).json()

    assert data["status"] == "healthy"
    assert data["last_run_id"] == "run-1"
    assert data["last_run_state"] == "completed"
    assert data["last_run_exit_code"] == 0
    assert len(data["checkpoints"]) == 5


@pytest.mark.asyncio
async def test_health_endpoint_degraded_after_failure(client, run_context, sources):
    """Test a failed latest run degrades health"""
    orchestrator = PipelineOrchestrator(run_context)
    with patch.object(orchestrator.stages, "clean", AsyncMock(side_effect=RuntimeError("boom"))):
        assert await orchestrator.run("run-bad", sources) == 1

    data = (await client.get("/health")).json()

    assert data["status"] == "degraded"
    assert data["last_run_state"] == "failed"


@pytest.mark.asyncio
async def test_list_runs(client, completed_run):
    response = await client.get("/runs")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["runs"][0]["run_id"] == "run-1"
    assert data["runs"][0]["stage_counts"]["cleaning"] == {"accepted": 10, "rejected": 3}

    filtered = (await client.get("/runs", params={"state": "failed"})).json()
    assert filtered == {"runs": [], "total": 0}


@pytest.mark.asyncio
async def test_get_run_includes_quality_report(client, completed_run):
    response = await client.get("/runs/run-1")

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "completed"
    assert data["mode"] == "full"
    assert len(data["sources"]) == 5

    checks = {c["name"]: c for c in data["quality_checks"]}
    assert checks["FactSales.ProductKey.references.DimProduct"]["status"] == "passed"
    assert all(c["status"] == "passed" for c in checks.values())


@pytest.mark.asyncio
async def test_get_run_not_found(client):
    response = await client.get("/runs/missing")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_rejects_pagination(client, completed_run):
    """Test rejects endpoint returns paginated results"""
    response = await client.get("/runs/run-1/rejects", params={"page": 1, "page_size": 3})

    assert response.status_code == 200
    data = response.json()

    assert len(data["items"]) == 3
    assert data["pagination"]["total_items"] == 4
    assert data["pagination"]["total_pages"] == 2
    assert data["pagination"]["has_next"] is True
    assert data["pagination"]["has_previous"] is False
    assert data["counts_by_reason"] == {
        "MISSING_BUSINESS_KEY": 1,
        "UNMAPPED_CODE": 1,
        "INVALID_TYPE": 1,
        "UNRESOLVED_FOREIGN_KEY": 1,
    }

    second = (await client.get("/runs/run-1/rejects", params={"page": 2, "page_size": 3})).json()
    assert len(second["items"]) == 1
    assert second["pagination"]["has_previous"] is True


@pytest.mark.asyncio
async def test_rejects_stage_filter(client, completed_run):
    data = (await client.get("/runs/run-1/rejects", params={"stage": "fact_load"})).json()

    assert len(data["items"]) == 1
    item = data["items"][0]
    assert item["stage"] == "fact_load"
    assert item["reason"] == "unresolved foreign key ProductKey"
    assert item["original_row"]["product"] == "P999"


@pytest.mark.asyncio
async def test_rejects_unknown_run(client):
    response = await client.get("/runs/missing/rejects")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert "X-API-Latency-ms" in response.headers
