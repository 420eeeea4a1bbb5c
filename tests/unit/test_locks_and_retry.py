"""
Unit tests for the keyed lock and the retry policy
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from core.exceptions import (
    ConcurrencyConflict,
    DatabaseConnectionError,
    DeadlockError,
    OperationTimeoutError,
    PersistenceUnavailableError,
    RetryBudgetExhausted,
)
from core.retry import RetryPolicy, classify_database_error, with_retry
from pipeline.locks import KeyedLock


class TestKeyedLock:
    """Test per-key serialization"""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        """Test holders of one key never overlap"""
        locks = KeyedLock()
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with locks.hold("customer:101"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        """Test different keys do not wait on each other"""
        locks = KeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await inside.wait()

        async with locks.hold("b"):
            entered_b = True
        release.set()
        await task

        assert entered_b

    @pytest.mark.asyncio
    async def test_locks_are_released(self):
        """Test the lock table empties once nobody holds a key"""
        locks = KeyedLock()

        async with locks.hold("a"):
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        """Test an exception inside the block still releases the key"""
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        async with locks.hold("a"):
            pass


class TestRetry:
    """Test bounded retries with timeouts"""

    @pytest.mark.asyncio
    async def test_succeeds_first_try(self):
        """Test no retry when the operation succeeds"""
        operation = AsyncMock(return_value=7)

        result = await with_retry(operation, op_name="test", max_retries=3, base_delay=0.001)

        assert result == 7
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_concurrency_conflict(self):
        """Test a lost race is retried until it succeeds"""
        operation = AsyncMock(side_effect=[ConcurrencyConflict("race"), ConcurrencyConflict("race"), "ok"])

        result = await with_retry(operation, op_name="test", max_retries=3, base_delay=0.001)

        assert result == "ok"
        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_budget_exhausted(self):
        """Test persistent conflicts escalate to a fatal error"""
        operation = AsyncMock(side_effect=ConcurrencyConflict("race"))

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await with_retry(operation, op_name="test", max_retries=2, base_delay=0.001)

        assert operation.call_count == 2
        assert isinstance(exc_info.value.original_exception, ConcurrencyConflict)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        """Test each attempt is bounded by the timeout"""
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await with_retry(slow, op_name="slow", max_retries=2, timeout=0.01, base_delay=0.001)

        assert isinstance(exc_info.value.original_exception, OperationTimeoutError)

    @pytest.mark.asyncio
    async def test_connection_failure_is_persistence_unavailable(self):
        """Test an unreachable database escalates to PersistenceUnavailableError"""
        operation = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("unable to open database file")))

        with pytest.raises(PersistenceUnavailableError):
            await with_retry(operation, op_name="test", max_retries=2, base_delay=0.001)

        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_propagates(self):
        """Test other errors are raised immediately"""
        operation = AsyncMock(side_effect=KeyError("nope"))

        with pytest.raises(KeyError):
            await with_retry(operation, op_name="test", max_retries=3, base_delay=0.001)

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_policy_runs_with_its_budget(self):
        """Test RetryPolicy passes its own budget to with_retry"""
        policy = RetryPolicy(max_retries=4, timeout=1.0, base_delay=0.001)
        operation = AsyncMock(side_effect=ConcurrencyConflict("race"))

        with pytest.raises(RetryBudgetExhausted):
            await policy.run(operation, op_name="test")

        assert operation.call_count == 4

    def test_retryable_errors_carry_no_budget(self):
        """Test the retry budget lives only on the policy"""
        error = ConcurrencyConflict("race", context={"surrogate_key": 7})

        assert not hasattr(error, "max_retries")
        assert not hasattr(error, "retry_delay")
        assert error.context["surrogate_key"] == 7

    def test_policy_from_settings(self, test_settings):
        """Test the policy mirrors settings"""
        policy = RetryPolicy.from_settings(test_settings)

        assert policy.max_retries == test_settings.MAX_RETRIES
        assert policy.timeout == test_settings.OPERATION_TIMEOUT_SECONDS
        assert policy.base_delay == test_settings.RETRY_BASE_DELAY_SECONDS


class TestClassifyDatabaseError:
    """Test mapping of driver errors onto the retry taxonomy"""

    def test_lock_contention(self):
        error = OperationalError("INSERT", {}, Exception("database is locked"))
        assert isinstance(classify_database_error(error), DeadlockError)

    def test_connection_error(self):
        error = OperationalError("SELECT 1", {}, Exception("could not connect to server"))
        assert isinstance(classify_database_error(error), DatabaseConnectionError)

    def test_integrity_error_not_retryable(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert classify_database_error(error) is None

    def test_retryable_passthrough(self):
        conflict = ConcurrencyConflict("race")
        assert classify_database_error(conflict) is conflict
