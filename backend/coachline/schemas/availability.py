"""Schemas for the coach slot-availability endpoint."""

from datetime import date
from typing import List, Optional

from pydantic import ConfigDict, Field

from ._strict_base import StrictModel


class AvailableSlotsResponse(StrictModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    coach_id: str
    date: date
    time_zone: str = Field(..., description="Zone the slots are expressed in")
    slot_minutes: int
    slots: List[str] = Field(default_factory=list, description="Start times as HH:MM")
    viewer_time_zone: Optional[str] = None
    display_slots: Optional[List[str]] = Field(
        default=None, description="Slots converted to the viewer's zone"
    )
