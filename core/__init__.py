"""
Core utilities and configuration for the warehouse ETL engine.

Modules:
    config: Application settings from environment variables / .env
    database: Async engine, session factory and dialect-aware inserts
    exceptions: Exception hierarchy (row-level, retryable, fatal)
    logging: Logging configuration
    retry: Timeout and bounded-retry policy for external calls

Usage:
    from core.config import settings
    from core.database import get_session_maker
    from core.exceptions import ParseError, PersistenceUnavailableError
    from core.logging import setup_logging
    from core.retry import with_retry
"""

__all__ = [
    "settings",
    "get_session_maker",
    "setup_logging",
    "with_retry",
    "RetryPolicy",
    # Exceptions
    "ETLException",
    "ParseError",
    "ReferentialError",
    "ValidationError",
    "ConfigurationError",
    "InvalidStageTransition",
    "LoadError",
    "DatabaseError",
    "RetryableError",
    "NonRetryableError",
    "ConcurrencyConflict",
    "OperationTimeoutError",
    "DatabaseConnectionError",
    "DeadlockError",
    "FatalError",
    "PersistenceUnavailableError",
    "RetryBudgetExhausted",
    "QualityThresholdBreached",
    "RunCancelled",
]
