# backend/coachline/routes/risk.py
"""
Admin risk routes - API v1

    GET /api/v1/admin/coaches/high-risk - Coaches above the high-risk threshold
    GET /api/v1/admin/coaches/{coach_id}/risk - One coach's score and factors
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from ..api.dependencies import get_risk_scoring_service, require_admin_key
from ..core.exceptions import DomainException
from ..schemas.risk import HighRiskCoachesResponse, RiskScoreResponse
from ..services.risk_scoring import RiskScoringService
from ._errors import ULID_PATH_PATTERN, handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/admin/coaches",
    tags=["admin-risk-v1"],
    dependencies=[Depends(require_admin_key)],
)


@router.get("/high-risk", response_model=HighRiskCoachesResponse)
async def list_high_risk_coaches(
    coach_ids: Optional[List[str]] = Query(None, description="Restrict to these coaches"),
    risk_service: RiskScoringService = Depends(get_risk_scoring_service),
) -> HighRiskCoachesResponse:
    scores = await asyncio.to_thread(risk_service.get_high_risk_coaches, coach_ids)
    return HighRiskCoachesResponse(
        coaches=[RiskScoreResponse(**s.to_payload()) for s in scores],
        count=len(scores),
    )


@router.get(
    "/{coach_id}/risk",
    response_model=RiskScoreResponse,
    responses={404: {"description": "Coach not found"}},
)
async def get_coach_risk(
    coach_id: str = Path(..., description="Coach ULID", pattern=ULID_PATH_PATTERN),
    risk_service: RiskScoringService = Depends(get_risk_scoring_service),
) -> RiskScoreResponse:
    try:
        score = await asyncio.to_thread(risk_service.compute_coach_risk_score, coach_id)
        return RiskScoreResponse(**score.to_payload())
    except DomainException as e:
        handle_domain_exception(e)
