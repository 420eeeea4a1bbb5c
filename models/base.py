from datetime import datetime, timezone
from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# ENUMS
# ============================================================================

class PipelineState(str, enum.Enum):
    """Run states, in execution order"""
    PENDING = "pending"
    LOADING = "loading"
    CLEANING = "cleaning"
    RESOLVING = "resolving"
    KEY_ASSIGNMENT = "key_assignment"
    DIMENSION_LOAD = "dimension_load"
    FACT_LOAD = "fact_load"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"


class RunMode(str, enum.Enum):
    """How much of Bronze a run reprocesses"""
    FULL = "full"
    INCREMENTAL = "incremental"


class CheckStatus(str, enum.Enum):
    """Quality check outcome"""
    PASSED = "passed"
    FAILED = "failed"        # advisory: failures within threshold
    BREACHED = "breached"    # failures above threshold, fails the run
