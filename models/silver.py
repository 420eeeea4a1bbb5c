from sqlalchemy import Column, String, Integer, BigInteger, DateTime, JSON, Index, UniqueConstraint
from models.base import Base, BigIntPK


class SilverCleanRecord(Base):
    """
    Conformed records produced by the cleaning stage.

    Scoped by run_id: every run materializes its own silver set, and a
    re-executed cleaning stage replaces its run's rows in one transaction.
    """
    __tablename__ = "silver_clean_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(String(100), nullable=False)

    entity_type = Column(String(100), nullable=False)
    business_key = Column(String(255), nullable=False)
    source_system = Column(String(100), nullable=False)
    extracted_at = Column(DateTime, nullable=False)
    row_number = Column(Integer, nullable=False, default=0)
    bronze_id = Column(BigInteger, nullable=True)

    attributes = Column(JSON, nullable=False)
    quality_flags = Column(JSON, nullable=False)

    __table_args__ = (
        Index("idx_silver_run_entity_key", "run_id", "entity_type", "business_key"),
    )


class SilverGoldenRecord(Base):
    """Golden records produced by survivorship, one per (run, entity, business key)."""
    __tablename__ = "silver_golden_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(String(100), nullable=False)

    entity_type = Column(String(100), nullable=False)
    business_key = Column(String(255), nullable=False)
    attributes = Column(JSON, nullable=False)
    provenance = Column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", "entity_type", "business_key", name="uq_golden_run_entity_key"),
    )
