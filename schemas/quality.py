"""
Quality report schemas
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.base import CheckStatus


class CheckResult(BaseModel):
    """Outcome of one quality check"""
    model_config = ConfigDict(from_attributes=True)

    name: str
    kind: str
    table: str
    status: CheckStatus
    failed_count: int = 0
    threshold: Optional[int] = None
    sample: List[Dict[str, Any]] = Field(default_factory=list)


class QualityReport(BaseModel):
    """Check results for one validation pass"""
    results: List[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.status == CheckStatus.PASSED for r in self.results)

    @property
    def breached(self) -> List[CheckResult]:
        return [r for r in self.results if r.status == CheckStatus.BREACHED]

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in CheckStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts
