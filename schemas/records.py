"""
Pydantic models for the records that flow between pipeline stages.

RawRecord -> (Conformer) -> CleanRecord | QuarantinedRecord
CleanRecord* -> (SurvivorshipResolver) -> GoldenRecord
GoldenRecord -> (DimensionBuilder) -> DimensionRow
CleanRecord (fact) -> (FactLoader) -> FactRow | RejectedFact
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Literal, Optional
import hashlib
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_naive_utc(value: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_jsonable(value: Any) -> Any:
    """Make a typed attribute value storable in a JSON column."""
    if isinstance(value, datetime):
        return to_naive_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


class RawRecord(BaseModel):
    """
    One raw row from a source extract.

    Immutable: the mapping keeps the source's column order and every value
    is the raw string (or None for a missing cell).
    """
    model_config = ConfigDict(frozen=True)

    source_system: str = Field(..., min_length=1, max_length=100)
    entity_type: str = Field(..., min_length=1, max_length=100)
    extracted_at: datetime
    columns: Dict[str, Optional[str]]
    row_number: int = 0
    bronze_id: Optional[int] = None

    @field_validator("extracted_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @field_validator("columns", mode="before")
    @classmethod
    def stringify_values(cls, v):
        """Raw values are strings; anything else the reader hands over is stringified"""
        if not isinstance(v, dict):
            raise ValueError("columns must be a mapping of column name to raw string")
        return {
            str(k): (None if val is None else str(val))
            for k, val in v.items()
        }

    def content_hash(self) -> str:
        """SHA-256 identity of the row, used to keep Bronze append-only without duplicates"""
        payload = canonical_json([
            self.source_system,
            self.entity_type,
            self.extracted_at.isoformat(),
            list(self.columns.items()),
        ])
        return hashlib.sha256(payload.encode()).hexdigest()


class CleanRecord(BaseModel):
    """Conformed, typed record; produced fresh every run."""
    model_config = ConfigDict(frozen=True)

    entity_type: str
    business_key: str = Field(..., min_length=1, max_length=255)
    source_system: str
    extracted_at: datetime
    attributes: Dict[str, Any] = Field(default_factory=dict)
    quality_flags: FrozenSet[str] = Field(default_factory=frozenset)
    row_number: int = 0
    bronze_id: Optional[int] = None

    @field_validator("extracted_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class QuarantinedRecord(BaseModel):
    """A raw row routed to the reject output instead of Silver."""
    model_config = ConfigDict(frozen=True)

    raw: RawRecord
    reason_code: str
    reason: str


class ConformResult(BaseModel):
    """Exactly one of ``record`` / ``quarantined`` is set."""
    model_config = ConfigDict(frozen=True)

    record: Optional[CleanRecord] = None
    quarantined: Optional[QuarantinedRecord] = None

    @property
    def accepted(self) -> bool:
        return self.record is not None


class GoldenRecord(BaseModel):
    """
    Survivorship output for one business key.

    provenance maps every attribute to the source system whose value won
    (None when no source had a value).
    """
    model_config = ConfigDict(frozen=True)

    entity_type: str
    business_key: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    provenance: Dict[str, Optional[str]] = Field(default_factory=dict)


class DimensionRow(BaseModel):
    """Current (type-1) state of one dimension member."""

    entity_type: str
    surrogate_key: int
    business_key: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    last_updated: datetime
    row_version: int = 1
    change: Literal["inserted", "updated", "unchanged"] = "unchanged"


class FactRow(BaseModel):
    """One fact row at its grain (physical column name -> surrogate key)."""

    table: str
    grain: Dict[str, int]
    measures: Dict[str, Optional[float]] = Field(default_factory=dict)
    change: Literal["inserted", "updated", "unchanged", "superseded"] = "unchanged"

    @property
    def grain_key(self) -> tuple:
        return tuple(self.grain.values())


class RejectedFact(BaseModel):
    record: CleanRecord
    reason_code: str
    reason: str


class FactLoadResult(BaseModel):
    """Exactly one of ``row`` / ``rejected`` is set."""

    row: Optional[FactRow] = None
    rejected: Optional[RejectedFact] = None

    @property
    def accepted(self) -> bool:
        return self.row is not None
