from sqlalchemy import Column, String, Integer, DateTime, UniqueConstraint
from models.base import Base, utcnow


class SurrogateKeyMapping(Base):
    """
    Durable (entity type, business key) -> surrogate key mapping.

    Design:
    - surrogate_key comes from one AUTOINCREMENT sequence shared by all
      entity types, so keys are monotonic and never reused, even after
      rows are rolled back by an aborted run
    - the unique constraint is the final arbiter when two processes race
      to allocate the same business key
    - rows are never updated or deleted
    """
    __tablename__ = "surrogate_key_registry"

    surrogate_key = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(100), nullable=False)
    business_key = Column(String(255), nullable=False)
    first_seen_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "business_key", name="uq_registry_entity_business_key"),
        {"sqlite_autoincrement": True},
    )
