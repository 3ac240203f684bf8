"""Risk score schemas for the admin risk endpoints."""

from typing import Any, Dict, List

from pydantic import Field

from ._strict_base import StrictModel


class RiskFactorResponse(StrictModel):
    type: str
    severity: str
    score: int = Field(..., ge=0, le=100)
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RiskScoreResponse(StrictModel):
    coach_id: str
    overall_score: int = Field(..., ge=0, le=100)
    is_high_risk: bool
    factors: List[RiskFactorResponse] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class HighRiskCoachesResponse(StrictModel):
    coaches: List[RiskScoreResponse]
    count: int
