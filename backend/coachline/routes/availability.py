# backend/coachline/routes/availability.py
"""
Public availability routes - API v1

    GET /api/v1/coaches/{coach_id}/available-slots - Open start times on a date
"""

import asyncio
from datetime import date
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from ..api.dependencies import get_slot_availability_service
from ..core.exceptions import DomainException
from ..schemas.availability import AvailableSlotsResponse
from ..services.slot_availability import DEFAULT_SLOT_MINUTES, SlotAvailabilityService
from ._errors import ULID_PATH_PATTERN, handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/coaches", tags=["availability-v1"])


@router.get(
    "/{coach_id}/available-slots",
    response_model=AvailableSlotsResponse,
    responses={404: {"description": "Coach not found"}},
)
async def get_available_slots(
    coach_id: str = Path(..., description="Coach ULID", pattern=ULID_PATH_PATTERN),
    on_date: date = Query(..., alias="date", description="Day in the coach's zone (YYYY-MM-DD)"),
    duration: int = Query(DEFAULT_SLOT_MINUTES, ge=1, le=1440, description="Session minutes"),
    viewer_tz: Optional[str] = Query(None, max_length=64, description="IANA zone for display"),
    availability_service: SlotAvailabilityService = Depends(get_slot_availability_service),
) -> AvailableSlotsResponse:
    """Start times, as HH:MM in the coach's zone, where a session of ``duration`` fits."""
    try:
        slots = await asyncio.to_thread(
            availability_service.get_available_slots,
            coach_id,
            on_date,
            slot_minutes=duration,
            viewer_time_zone=viewer_tz,
        )
        return AvailableSlotsResponse.model_validate(slots)
    except DomainException as e:
        handle_domain_exception(e)
