"""
Booking schemas.

Request bodies for the booking lifecycle endpoints and the response shape
shared by every transition: the booking plus any secondary outcome (refund,
side effects) reported next to it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, EmailStr, Field, field_validator, model_validator

from ..core.enums import CancelledBy
from ..core.timezone_utils import ensure_utc
from ._strict_base import StrictModel, StrictRequestModel


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("datetime must include a UTC offset")
    return ensure_utc(value)


# ========== Request Models ==========


class BookingCreateRequest(StrictRequestModel):
    """Paid session request; price comes from the coach's offering catalog."""

    coach_id: str = Field(..., min_length=1)
    student_id: str = Field(..., min_length=1)
    scheduled_start: datetime = Field(..., description="Session start with UTC offset")
    session_minutes: Optional[int] = Field(default=None, gt=0, le=600)
    offering_id: Optional[str] = Field(default=None, description="Custom offering id")
    student_email: Optional[EmailStr] = None
    student_name: Optional[str] = Field(default=None, max_length=200)
    time_zone: Optional[str] = Field(default=None, max_length=64)

    _aware_start = field_validator("scheduled_start")(_require_aware)

    @model_validator(mode="after")
    def _offering_or_minutes(self) -> "BookingCreateRequest":
        if not self.offering_id and not self.session_minutes:
            raise ValueError("Either offering_id or session_minutes is required")
        return self


class FreeIntroCreateRequest(StrictRequestModel):
    coach_id: str = Field(..., min_length=1)
    student_id: str = Field(..., min_length=1)
    scheduled_start: datetime
    student_email: Optional[EmailStr] = None
    student_name: Optional[str] = Field(default=None, max_length=200)
    time_zone: Optional[str] = Field(default=None, max_length=64)
    buffer_minutes: Optional[int] = Field(default=None, ge=0, le=240)

    _aware_start = field_validator("scheduled_start")(_require_aware)


class BookingConfirmRequest(StrictRequestModel):
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)


class BookingCancelRequest(StrictRequestModel):
    cancelled_by: CancelledBy = CancelledBy.STUDENT
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingRescheduleRequest(StrictRequestModel):
    new_start: datetime
    offering_id: Optional[str] = None
    session_minutes: Optional[int] = Field(default=None, gt=0, le=600)
    reason: Optional[str] = Field(default=None, max_length=500)

    _aware_start = field_validator("new_start")(_require_aware)


# ========== Response Models ==========


class BookingResponse(StrictModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")

    id: str
    coach_id: str
    student_id: str
    type: str
    status: str
    offering_id: Optional[str] = None
    session_minutes: int
    price_cents: int
    currency: str
    scheduled_start: datetime
    scheduled_end: datetime
    buffer_minutes: int
    time_zone: str
    payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    refund_error: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    original_scheduled_start: Optional[datetime] = None
    reschedule_reason: Optional[str] = None
    reschedule_count: int = 0
    external_booking_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator(
        "scheduled_start",
        "scheduled_end",
        "cancelled_at",
        "original_scheduled_start",
        "confirmed_at",
        "completed_at",
    )
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class SideEffectResponse(StrictModel):
    name: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


class RefundResponse(StrictModel):
    ok: bool
    amount_cents: int
    reason: str
    refund_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


class BookingActionResponse(StrictModel):
    """A successful transition; ``error`` carries a secondary failure, if any."""

    booking: BookingResponse
    checkout_url: Optional[str] = None
    purchase_id: Optional[str] = None
    refund: Optional[RefundResponse] = None
    refund_error: Optional[str] = None
    price_delta_cents: int = 0
    already_processed: bool = False
    side_effects: List[SideEffectResponse] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: Any) -> "BookingActionResponse":
        refund: Optional[Dict[str, Any]] = result.refund.to_payload() if result.refund else None
        return cls(
            booking=BookingResponse.model_validate(result.booking),
            checkout_url=result.checkout_url,
            purchase_id=result.purchase.id if result.purchase else None,
            refund=RefundResponse(**refund) if refund else None,
            refund_error=refund["error"] if refund else None,
            price_delta_cents=result.price_delta_cents,
            already_processed=result.already_processed,
            side_effects=[SideEffectResponse(**e.to_payload()) for e in result.side_effects],
            error=result.error,
        )
