from sqlalchemy import Column, String, Integer, DateTime, JSON, Index
from models.base import Base, BigIntPK, utcnow


class BronzeRawRecord(Base):
    """
    Bronze layer: raw rows exactly as the source reader delivered them.

    Purpose:
    - Immutable audit trail (append-only, never updated or deleted)
    - Reprocessing capability for full and incremental runs
    - Data lineage for silver, golden and reject rows

    Design Decisions:
    - content_hash (SHA-256 over source, entity, extraction time and payload)
      is unique, so reloading an identical extract appends nothing
    - business_key holds the trimmed raw key so incremental runs can gather
      every bronze row for a touched key
    - loaded_run_id records the run that first appended the row
    """
    __tablename__ = "bronze_raw_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Source identification
    source_system = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), nullable=False, index=True)
    row_number = Column(Integer, nullable=False, default=0)
    business_key = Column(String(255), nullable=True)

    # Raw data storage
    payload = Column(JSON, nullable=False)

    # Metadata
    extracted_at = Column(DateTime, nullable=False, index=True)
    ingested_at = Column(DateTime, nullable=False, default=utcnow)
    content_hash = Column(String(64), nullable=False, unique=True)
    loaded_run_id = Column(String(100), nullable=False, index=True)

    __table_args__ = (
        Index("idx_bronze_source_entity", "source_system", "entity_type", "extracted_at"),
        Index("idx_bronze_entity_key", "entity_type", "business_key"),
    )
