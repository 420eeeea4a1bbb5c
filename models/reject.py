from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, JSON, Enum, Index
from models.base import Base, BigIntPK, PipelineState, utcnow


class RejectRecord(Base):
    """
    Reject output: rows quarantined by a stage, keyed by run id and stage.

    Every rejected row keeps its original payload and a reason code, so no
    row is ever silently dropped. Rows for a (run, stage) pair are replaced
    when that stage is re-executed, keeping exactly one disposition per row.
    """
    __tablename__ = "reject_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(String(100), nullable=False)
    stage = Column(Enum(PipelineState), nullable=False)

    source_system = Column(String(100), nullable=True)
    entity_type = Column(String(100), nullable=True)
    row_number = Column(Integer, nullable=True)
    bronze_id = Column(BigInteger, nullable=True)

    original_row = Column(JSON, nullable=False)
    reason_code = Column(String(100), nullable=False)
    reason = Column(Text, nullable=False)

    rejected_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_reject_run_stage", "run_id", "stage"),
    )
