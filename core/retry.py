"""
Timeout and bounded-retry policy for every external call the pipeline makes.

Registry persistence and warehouse table reads/writes all go through
``with_retry``:

- each attempt runs under ``asyncio.wait_for`` with a timeout
- timeouts, lost concurrency races and transient database errors are retried
  with exponential backoff
- once the budget is spent the error escalates to a FatalError
  (PersistenceUnavailableError when the store itself is unreachable)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from core.config import Settings, settings
from core.exceptions import (
    DatabaseConnectionError,
    DeadlockError,
    OperationTimeoutError,
    PersistenceUnavailableError,
    RetryableError,
    RetryBudgetExhausted,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_MARKERS = ("locked", "deadlock", "could not serialize", "busy")


def classify_database_error(
    exc: Exception,
    context: Optional[Dict[str, Any]] = None
) -> Optional[RetryableError]:
    """
    Map a driver-level exception onto the retryable taxonomy.

    Returns None when the exception is not transient.
    """
    if isinstance(exc, RetryableError):
        return exc

    message = str(exc).lower()

    if isinstance(exc, OperationalError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        if any(marker in message for marker in _LOCK_MARKERS):
            return DeadlockError(
                "Database lock contention",
                context=dict(context or {}),
                original_exception=exc
            )
        return DatabaseConnectionError(
            "Database unavailable",
            context=dict(context or {}),
            original_exception=exc
        )

    if isinstance(exc, (ConnectionError, OSError)):
        return DatabaseConnectionError(
            "Database connection failed",
            context=dict(context or {}),
            original_exception=exc
        )

    return None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    op_name: str,
    context: Optional[Dict[str, Any]] = None,
    max_retries: Optional[int] = None,
    timeout: Optional[float] = None,
    base_delay: Optional[float] = None,
) -> T:
    """
    Run ``operation`` with a per-attempt timeout and bounded retries.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        op_name: Name used in logs and error context
        context: Extra error context
        max_retries: Total attempts (defaults to settings.MAX_RETRIES)
        timeout: Per-attempt timeout in seconds
        base_delay: Initial backoff delay in seconds

    Raises:
        PersistenceUnavailableError: The store stayed unreachable
        RetryBudgetExhausted: Any other retryable failure outlasted the budget
        Exception: Non-retryable errors are re-raised immediately
    """
    attempts = max(1, max_retries if max_retries is not None else settings.MAX_RETRIES)
    timeout = timeout if timeout is not None else settings.OPERATION_TIMEOUT_SECONDS
    base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY_SECONDS
    error_context = {"operation": op_name, **(context or {})}

    last_error: Optional[RetryableError] = None

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)

        except asyncio.TimeoutError as e:
            last_error = OperationTimeoutError(
                f"{op_name} timed out after {timeout}s",
                context=dict(error_context),
                original_exception=e
            )

        except Exception as e:
            retryable = classify_database_error(e, error_context)
            if retryable is None:
                raise
            last_error = retryable

        if attempt < attempts - 1:
            # jittered exponential backoff
            delay = base_delay * (2 ** attempt) * (0.5 + random.random())
            logger.warning(
                f"{op_name} failed with {type(last_error).__name__}. "
                f"Retrying in {delay:.3f} seconds (attempt {attempt + 1}/{attempts})"
            )
            await asyncio.sleep(delay)

    exhausted_context = {**error_context, "retry_count": attempts}
    if isinstance(last_error, DatabaseConnectionError):
        raise PersistenceUnavailableError(
            f"{op_name}: persistence unavailable after {attempts} attempts",
            context=exhausted_context,
            original_exception=last_error
        )
    raise RetryBudgetExhausted(
        f"{op_name}: retry budget exhausted after {attempts} attempts",
        context=exhausted_context,
        original_exception=last_error
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and timeout carried by each component."""
    max_retries: int = 3
    timeout: float = 30.0
    base_delay: float = 0.1

    @classmethod
    def from_settings(cls, app_settings: Settings = settings) -> "RetryPolicy":
        return cls(
            max_retries=app_settings.MAX_RETRIES,
            timeout=app_settings.OPERATION_TIMEOUT_SECONDS,
            base_delay=app_settings.RETRY_BASE_DELAY_SECONDS,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        op_name: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> T:
        return await with_retry(
            operation,
            op_name=op_name,
            context=context,
            max_retries=self.max_retries,
            timeout=self.timeout,
            base_delay=self.base_delay,
        )

