"""
Pydantic schemas for API request/response models
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.base import PipelineState, RunMode, utcnow
from schemas.quality import CheckResult


# ============================================================================
# Health Check Schemas
# ============================================================================

class CheckpointInfo(BaseModel):
    """Incremental watermark of one source"""
    model_config = ConfigDict(from_attributes=True)

    source_system: str
    entity_type: str
    watermark: Optional[datetime] = None
    last_run_id: Optional[str] = None
    last_success_at: Optional[datetime] = None
    total_runs: int = 0
    total_records_processed: int = 0
    last_records_processed: int = 0


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(default="healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    last_run_id: Optional[str] = None
    last_run_state: Optional[PipelineState] = None
    last_run_exit_code: Optional[int] = None
    checkpoints: List[CheckpointInfo] = Field(default_factory=list)

    @model_validator(mode="after")
    def determine_status(self):
        """Derive overall health from connectivity and the latest run"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.last_run_state == PipelineState.FAILED:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00",
                "database_connected": True,
                "last_run_id": "nightly-2024-01-15",
                "last_run_state": "completed",
                "last_run_exit_code": 0,
                "checkpoints": [
                    {
                        "source_system": "crm",
                        "entity_type": "customer",
                        "watermark": "2024-01-15T02:00:00",
                        "last_run_id": "nightly-2024-01-15",
                        "total_runs": 12,
                        "total_records_processed": 1500,
                        "last_records_processed": 25
                    }
                ]
            }
        }
    )


# ============================================================================
# Run Schemas
# ============================================================================

class RunSummary(BaseModel):
    """One run record"""
    model_config = ConfigDict(from_attributes=True)

    run_id: str
    mode: RunMode
    state: PipelineState
    last_completed_stage: Optional[PipelineState] = None
    exit_code: Optional[int] = None
    attempts: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    stage_counts: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    error_message: Optional[str] = None


class RunDetail(RunSummary):
    """Run record with its error details, inputs and quality report"""
    error_details: Optional[Dict[str, Any]] = None
    sources: Optional[List[Dict[str, Any]]] = None
    quality_checks: List[CheckResult] = Field(default_factory=list)


class RunListResponse(BaseModel):
    runs: List[RunSummary]
    total: int


# ============================================================================
# Reject Schemas
# ============================================================================

class RejectInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stage: PipelineState
    source_system: Optional[str] = None
    entity_type: Optional[str] = None
    row_number: Optional[int] = None
    bronze_id: Optional[int] = None
    original_row: Dict[str, Any]
    reason_code: str
    reason: str
    rejected_at: datetime


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class RejectsResponse(BaseModel):
    """Paginated rejects of one run"""
    run_id: str
    items: List[RejectInfo]
    pagination: PaginationMetadata
    counts_by_reason: Dict[str, int] = Field(default_factory=dict)


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
