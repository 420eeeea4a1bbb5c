"""
Custom exceptions for the warehouse pipeline with structured error context.

Each exception carries a context dictionary for debugging and for the run
record, plus the original exception when one was wrapped.

Exception Hierarchy:
    ETLException (base)
    ├── ParseError                 row-level, quarantines the row
    ├── ReferentialError           row-level, quarantines the fact row
    ├── ValidationError            quality check failure (advisory)
    ├── ConfigurationError         invalid pipeline configuration
    ├── InvalidStageTransition     state machine violation
    ├── LoadError
    │   └── DatabaseError
    └── RetryableError / NonRetryableError
        ├── ConcurrencyConflict    (retryable)
        ├── OperationTimeoutError  (retryable)
        ├── DatabaseConnectionError (retryable)
        ├── DeadlockError          (retryable)
        └── FatalError             (non-retryable)
            ├── PersistenceUnavailableError
            ├── RetryBudgetExhausted
            ├── QualityThresholdBreached
            └── RunCancelled
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (stage, entity, key, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Row-level Errors
# ============================================================================

class ParseError(ETLException):
    """
    Raised when a raw row cannot be conformed.

    The row is quarantined with ``reason_code``; the batch continues.
    """

    def __init__(
        self,
        message: str,
        reason_code: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.reason_code = reason_code
        self.context["reason_code"] = reason_code


class ReferentialError(ETLException):
    """
    Raised when a fact row's required dimension reference does not resolve.

    Context should include:
        - reference: Name of the foreign key (e.g. ProductKey)
        - business_key: The business key that failed to resolve
    """

    reason_code = "UNRESOLVED_FOREIGN_KEY"


class ValidationError(ETLException):
    """
    Quality check failure.

    Recorded in the quality report; only halts the run when the check's
    threshold is exceeded (see QualityThresholdBreached).
    """
    pass


class ConfigurationError(ETLException):
    """Pipeline configuration is invalid or incomplete."""
    pass


class InvalidStageTransition(ETLException):
    """A run tried to move between states the state machine does not allow."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for warehouse write failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, INSERT, UPDATE)
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Timeouts on registry persistence or table writes
    - Lost optimistic-concurrency races
    - Temporary database connection issues, lock contention

    The retry budget itself belongs to RetryPolicy.
    """
    pass


class NonRetryableError(ETLException):
    """Mixin for errors that should NOT trigger retry logic."""
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class ConcurrencyConflict(RetryableError):
    """
    Key-assignment or dimension-upsert race.

    Context should include:
        - entity_type / business_key or surrogate_key
        - expected_version (for optimistic updates)
    """
    pass


class OperationTimeoutError(RetryableError):
    """An external call exceeded its timeout."""
    pass


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    pass


class DeadlockError(RetryableError, DatabaseError):
    """Database deadlock / lock contention errors that should be retried."""
    pass


# ============================================================================
# Fatal Errors
# ============================================================================

class FatalError(NonRetryableError):
    """Aborts the run at the current stage boundary."""
    pass


class PersistenceUnavailableError(FatalError):
    """The warehouse store could not be reached after all retries."""
    pass


class RetryBudgetExhausted(FatalError):
    """A retryable operation kept failing past its retry budget."""
    pass


class QualityThresholdBreached(FatalError):
    """
    One or more quality checks failed more rows than their threshold allows.

    Context should include:
        - breached_checks: Names of the checks over threshold
    """
    pass


class RunCancelled(FatalError):
    """The run was cancelled between stages."""
    pass
