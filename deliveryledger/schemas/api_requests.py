"""
Request bodies for the reconciliation endpoints.
"""
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


class RunReconciliationRequest(BaseModel):
    period_type: str = "daily"
    report_date: date
    force: bool = False
    executed_by: str = Field("manual", max_length=100)


class ReviewAnomalyRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1, max_length=100)


class ResolveAnomalyRequest(BaseModel):
    status: str  # resolved, false_positive, accepted_risk
    notes: Optional[str] = Field(None, max_length=5000)
    resolver_id: str = Field(..., min_length=1, max_length=100)
