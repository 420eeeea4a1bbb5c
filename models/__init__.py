"""
SQLAlchemy ORM models for the warehouse tables.

Models:
    base: Declarative base and shared enums (PipelineState, RunMode, CheckStatus)
    raw_data: Bronze layer, append-only raw rows
    silver: Conformed records and golden records, scoped by run
    registry: Surrogate key registry
    warehouse: Gold layer star schema (DimDate, DimCustomer, DimProduct,
               DimSalesRep, FactSales)
    reject: Reject output keyed by run and stage
    quality: Persisted quality report lines
    etl_run: Run records
    checkpoint: Incremental watermarks per source

Usage:
    from models import PipelineRun, SurrogateKeyMapping, FactSales
    from models.base import PipelineState, RunMode

Ownership:
    - surrogate_key_registry is written only by the key registry
    - Dim* tables are written only by the dimension builder
    - FactSales is written only by the fact loader
"""

from models.base import Base, PipelineState, RunMode, CheckStatus
from models.raw_data import BronzeRawRecord
from models.silver import SilverCleanRecord, SilverGoldenRecord
from models.registry import SurrogateKeyMapping
from models.warehouse import DimDate, DimCustomer, DimProduct, DimSalesRep, FactSales
from models.reject import RejectRecord
from models.quality import QualityCheckResult
from models.etl_run import PipelineRun
from models.checkpoint import SourceCheckpoint

__all__ = [
    "Base",
    "PipelineState",
    "RunMode",
    "CheckStatus",
    "BronzeRawRecord",
    "SilverCleanRecord",
    "SilverGoldenRecord",
    "SurrogateKeyMapping",
    "DimDate",
    "DimCustomer",
    "DimProduct",
    "DimSalesRep",
    "FactSales",
    "RejectRecord",
    "QualityCheckResult",
    "PipelineRun",
    "SourceCheckpoint",
]
