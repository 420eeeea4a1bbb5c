from sqlalchemy import Column, String, Integer, DateTime, JSON, Enum, UniqueConstraint
from models.base import Base, BigIntPK, CheckStatus, utcnow


class QualityCheckResult(Base):
    """
    Persisted quality report line, one per (run, check).

    A re-executed validation stage replaces its run's results.
    """
    __tablename__ = "quality_check_results"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(String(100), nullable=False, index=True)

    check_name = Column(String(200), nullable=False)
    kind = Column(String(50), nullable=False)
    table_name = Column(String(100), nullable=False)
    status = Column(Enum(CheckStatus), nullable=False)
    failed_count = Column(Integer, nullable=False, default=0)
    threshold = Column(Integer, nullable=True)
    sample = Column(JSON, nullable=False)

    checked_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "check_name", name="uq_quality_run_check"),
    )
