from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, JSON, Index
from models.base import Base, BigIntPK, PipelineState, RunMode, utcnow


class PipelineRun(Base):
    """
    Tracks one pipeline run (the run record).

    Purpose:
    - Audit trail of every run and every resume attempt
    - Stage reached, last completed stage, per-stage accepted/rejected counts
    - Error tracking for failed runs
    - Resume point for a failed run
    """
    __tablename__ = "pipeline_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(String(100), unique=True, nullable=False, index=True)
    mode = Column(Enum(RunMode), nullable=False, default=RunMode.FULL)

    # State machine
    state = Column(Enum(PipelineState), nullable=False, default=PipelineState.PENDING, index=True)
    last_completed_stage = Column(Enum(PipelineState), nullable=True)
    exit_code = Column(Integer, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics: {"cleaning": {"accepted": 10, "rejected": 1}, ...}
    stage_counts = Column(JSON, nullable=False, default=dict)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    # Inputs
    sources = Column(JSON, nullable=True)
    config_snapshot = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_pipeline_run_state_started", "state", "started_at"),
    )
