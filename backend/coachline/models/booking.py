# backend/coachline/models/booking.py
"""
Booking model for the Coachline platform.

A booking is one scheduled (or requested) coaching session. Instants are
stored in UTC; ``time_zone`` is only the zone the coach quoted availability
in and is used for display.

Bookings are never deleted. ``cancelled`` and ``completed`` are terminal.
"""

from datetime import datetime
import logging
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import TERMINAL_BOOKING_STATUSES, BookingStatus, BookingType
from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)


class Booking(Base):
    """Self-contained booking record between a student and a coach."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    coach_id = Column(String(26), ForeignKey("coaches.id"), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    student_email = Column(String(255), nullable=True)
    student_name = Column(String(200), nullable=True)

    type = Column(String(20), nullable=False, default=BookingType.PAID.value)
    offering_id = Column(String(26), ForeignKey("coach_offerings.id"), nullable=True)
    session_minutes = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(
        String(20), nullable=False, default=BookingStatus.REQUESTED.value, index=True
    )

    scheduled_start = Column(DateTime(timezone=True), nullable=False, index=True)
    scheduled_end = Column(DateTime(timezone=True), nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=0)
    time_zone = Column(String(64), nullable=False)
    cancellation_policy = Column(JSON, nullable=True)

    # Payment
    stripe_checkout_session_id = Column(String(255), nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True, comment="Payment reference")
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Refund (unset refund_id on a cancelled paid booking means refund outstanding)
    refund_id = Column(String(255), nullable=True)
    refund_amount_cents = Column(Integer, nullable=True)
    refund_error = Column(Text, nullable=True)

    # Cancellation tracking
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Reschedule tracking (original start is written on the first reschedule only)
    original_scheduled_start = Column(DateTime(timezone=True), nullable=True)
    reschedule_reason = Column(Text, nullable=True)
    rescheduled_at = Column(DateTime(timezone=True), nullable=True)
    reschedule_count = Column(Integer, nullable=False, default=0)

    # External correlation ids
    external_booking_id = Column(String(255), nullable=True)
    calendar_event_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    coach = relationship("Coach")
    offering = relationship("CoachOffering")

    __table_args__ = (
        CheckConstraint("scheduled_end > scheduled_start", name="ck_bookings_end_after_start"),
        CheckConstraint("price_cents >= 0", name="ck_bookings_price_non_negative"),
        CheckConstraint("buffer_minutes >= 0", name="ck_bookings_buffer_non_negative"),
        CheckConstraint(
            "(type = 'free_intro' AND price_cents = 0) OR (type = 'paid' AND price_cents > 0)",
            name="ck_bookings_price_matches_type",
        ),
        CheckConstraint(
            "refund_amount_cents IS NULL OR refund_amount_cents <= price_cents",
            name="ck_bookings_refund_bounded",
        ),
        CheckConstraint(
            "status IN ('requested', 'confirmed', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        Index("ix_bookings_coach_status_start", "coach_id", "status", "scheduled_start"),
        Index("ix_bookings_student_coach_type", "student_id", "coach_id", "type"),
    )

    @property
    def booking_status(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.booking_status in TERMINAL_BOOKING_STATUSES

    @property
    def is_free_intro(self) -> bool:
        return self.type == BookingType.FREE_INTRO.value

    @property
    def start_utc(self) -> datetime:
        return ensure_utc(self.scheduled_start)

    @property
    def end_utc(self) -> datetime:
        return ensure_utc(self.scheduled_end)

    @property
    def refund_outstanding(self) -> bool:
        return bool(self.refund_error) and not self.refund_id

    def payment_reference(self) -> Optional[str]:
        return self.payment_intent_id or None

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id} coach={self.coach_id} {self.type} {self.status} "
            f"{self.scheduled_start}>"
        )
