"""
Unit tests for the surrogate key registry
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from core.exceptions import PersistenceUnavailableError
from core.retry import RetryPolicy
from models.registry import SurrogateKeyMapping
from pipeline.registry import SurrogateKeyRegistry


class TestSurrogateKeyRegistry:
    """Test key allocation and lookup"""

    @pytest.mark.asyncio
    async def test_assign_is_stable(self, session_factory, retry_policy):
        """Test the same business key always gets the same key"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)

        first = await registry.assign_or_get("customer", "101")
        second = await registry.assign_or_get("customer", "101")

        assert first == second

    @pytest.mark.asyncio
    async def test_keys_are_monotonic_across_entities(self, session_factory, retry_policy):
        """Test one increasing sequence shared by all entity types"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)

        keys = [
            await registry.assign_or_get("customer", "101"),
            await registry.assign_or_get("product", "101"),
            await registry.assign_or_get("customer", "102"),
        ]

        assert keys == sorted(keys)
        assert len(set(keys)) == 3

    @pytest.mark.asyncio
    async def test_concurrent_assignment_agrees(self, session_factory, retry_policy):
        """Test concurrent callers for one business key all see one key"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)

        keys = await asyncio.gather(*(registry.assign_or_get("customer", "101") for _ in range(20)))

        assert len(set(keys)) == 1

        async with session_factory() as session:
            count = (await session.execute(
                select(func.count()).select_from(SurrogateKeyMapping)
            )).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_concurrent_registries_agree(self, session_factory, retry_policy):
        """Test independent registry instances racing on one key agree"""
        registries = [SurrogateKeyRegistry(session_factory, retry_policy) for _ in range(5)]

        keys = await asyncio.gather(*(r.assign_or_get("product", "55") for r in registries))

        assert len(set(keys)) == 1

    @pytest.mark.asyncio
    async def test_different_keys_get_different_values(self, session_factory, retry_policy):
        """Test distinct business keys never share a surrogate key"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)

        keys = await asyncio.gather(*(registry.assign_or_get("customer", str(i)) for i in range(25)))

        assert len(set(keys)) == 25

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, session_factory, retry_policy):
        """Test a new registry (next run) returns the prior key"""
        first = await SurrogateKeyRegistry(session_factory, retry_policy).assign_or_get("customer", "101")
        second = await SurrogateKeyRegistry(session_factory, retry_policy).assign_or_get("customer", "101")

        assert first == second

    @pytest.mark.asyncio
    async def test_lookup_never_allocates(self, session_factory, retry_policy):
        """Test lookup of an unknown key returns None and writes nothing"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)

        assert await registry.lookup("customer", "999") is None

        key = await registry.assign_or_get("customer", "999")
        assert await SurrogateKeyRegistry(session_factory, retry_policy).lookup("customer", "999") == key

    @pytest.mark.asyncio
    async def test_lookup_many(self, session_factory, retry_policy):
        """Test bulk lookup returns only known keys"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)
        a = await registry.assign_or_get("product", "A")
        b = await registry.assign_or_get("product", "B")

        found = await SurrogateKeyRegistry(session_factory, retry_policy).lookup_many("product", ["A", "B", "C", "A"])

        assert found == {"A": a, "B": b}

    @pytest.mark.asyncio
    async def test_empty_business_key(self, session_factory, retry_policy):
        """Test empty keys are refused"""
        registry = SurrogateKeyRegistry(session_factory, retry_policy)

        with pytest.raises(ValueError):
            await registry.assign_or_get("customer", "")

    @pytest.mark.asyncio
    async def test_persistence_unavailable(self):
        """Test an unreachable store escalates after bounded retries"""
        broken_factory = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("connection refused")))
        registry = SurrogateKeyRegistry(
            broken_factory,
            RetryPolicy(max_retries=3, timeout=1.0, base_delay=0.001)
        )

        with pytest.raises(PersistenceUnavailableError) as exc_info:
            await registry.assign_or_get("customer", "101")

        assert exc_info.value.context["retry_count"] == 3
        assert broken_factory.call_count == 3
