"""
Pydantic schemas for data validation and serialization.

Schemas:
    records: In-flight records passed between stages (RawRecord,
             CleanRecord, GoldenRecord, DimensionRow, FactRow, ...)
    config: Pipeline configuration loaded from YAML
    quality: Quality check results and reports
    api: API endpoint response models

Usage:
    from schemas.records import RawRecord, CleanRecord
    from schemas.config import load_pipeline_config
    from schemas.api import RunDetail, HealthCheckResponse

Validation:
    Records are frozen once built; configuration is validated when loaded
    and invalid configuration raises ConfigurationError.
"""

__all__ = [
    "RawRecord",
    "CleanRecord",
    "GoldenRecord",
    "PipelineConfig",
    "QualityReport",
    "RunDetail",
    "HealthCheckResponse",
]
