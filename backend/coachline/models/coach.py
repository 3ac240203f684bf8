# backend/coachline/models/coach.py
"""
Coach, offering catalog and availability models.

Weekly availability and date overrides are stored as coach-local wall-clock
"HH:MM" strings; the coach's ``timezone`` anchors them to real instants.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import ComplianceStatus, StripeConnectStatus
from ..database import Base


class Coach(Base):
    """Coach profile with the fields the booking and settlement core reads."""

    __tablename__ = "coaches"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    display_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    timezone = Column(String(64), nullable=False, default="America/New_York")

    # Payout account
    stripe_account_id = Column(String(255), nullable=True, unique=True)
    stripe_connect_status = Column(
        String(20), nullable=False, default=StripeConnectStatus.NOT_CONNECTED.value
    )
    last_payout_at = Column(DateTime(timezone=True), nullable=True)
    next_payout_at = Column(DateTime(timezone=True), nullable=True)

    # Trust signals read by risk scoring
    compliance_status = Column(String(20), nullable=False, default=ComplianceStatus.PENDING.value)
    compliance_notes = Column(Text, nullable=True)
    rating_avg = Column(Float, nullable=True)
    rating_count = Column(Integer, nullable=False, default=0)

    # Booking preferences
    free_intro_enabled = Column(Boolean, nullable=False, default=False)
    free_intro_minutes = Column(Integer, nullable=True)
    default_buffer_minutes = Column(Integer, nullable=False, default=0)
    cancellation_policy = Column(JSON, nullable=True)
    calcom_event_type_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    offerings = relationship("CoachOffering", back_populates="coach", cascade="all, delete-orphan")
    weekly_availability = relationship(
        "WeeklyAvailability", back_populates="coach", cascade="all, delete-orphan"
    )
    availability_overrides = relationship(
        "AvailabilityOverride", back_populates="coach", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("rating_count >= 0", name="ck_coaches_rating_count_non_negative"),
        CheckConstraint(
            "default_buffer_minutes >= 0", name="ck_coaches_default_buffer_non_negative"
        ),
    )

    @property
    def has_payout_account(self) -> bool:
        return bool(self.stripe_account_id)

    def __repr__(self) -> str:
        return f"<Coach {self.id} {self.display_name!r} stripe={self.stripe_connect_status}>"


class CoachOffering(Base):
    """
    Priced session type a coach sells.

    Standard offerings are matched by duration; custom offerings are
    addressed by id and may carry their own buffer.
    """

    __tablename__ = "coach_offerings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    coach_id = Column(
        String(26), ForeignKey("coaches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(200), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=True)
    is_custom = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    coach = relationship("Coach", back_populates="offerings")

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_coach_offerings_duration_positive"),
        CheckConstraint("price_cents > 0", name="ck_coach_offerings_price_positive"),
        CheckConstraint(
            "buffer_minutes IS NULL OR buffer_minutes >= 0",
            name="ck_coach_offerings_buffer_non_negative",
        ),
    )


class WeeklyAvailability(Base):
    """Recurring weekly window. ``day_of_week`` uses 0=Sunday .. 6=Saturday."""

    __tablename__ = "weekly_availability"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    coach_id = Column(
        String(26), ForeignKey("coaches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM coach-local
    end_time = Column(String(5), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    coach = relationship("Coach", back_populates="weekly_availability")

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_weekly_availability_day"),
    )


class AvailabilityOverride(Base):
    """Date-specific override; replaces the weekly entry for its date."""

    __tablename__ = "availability_overrides"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    coach_id = Column(
        String(26), ForeignKey("coaches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    date = Column(Date, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    start_time = Column(String(5), nullable=True)
    end_time = Column(String(5), nullable=True)

    coach = relationship("Coach", back_populates="availability_overrides")

    __table_args__ = (
        UniqueConstraint("coach_id", "date", name="uq_availability_overrides_coach_date"),
    )
