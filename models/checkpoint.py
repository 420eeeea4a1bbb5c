from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Index
from models.base import Base, utcnow


class SourceCheckpoint(Base):
    """
    Tracks incremental ingestion state per source.

    Purpose:
    - Incremental runs skip raw rows at or below the watermark
    - Avoid re-reading old extracts

    Design:
    - One row per (source_system, entity_type)
    - watermark is the latest extraction timestamp of a completed run;
      it never advances for a failed run
    """
    __tablename__ = "source_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Source identification
    source_system = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=False)

    # Checkpoint data
    watermark = Column(DateTime, nullable=True)
    last_run_id = Column(String(100), nullable=True)

    # Statistics
    last_success_at = Column(DateTime, nullable=True)
    total_runs = Column(Integer, default=0)
    total_records_processed = Column(BigInteger, default=0)
    last_records_processed = Column(Integer, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Constraints
    __table_args__ = (
        Index("idx_checkpoint_source_entity", "source_system", "entity_type", unique=True),
    )
