# backend/coachline/services/slot_availability.py
"""
Slot Availability Engine.

Decides whether an interval may be booked for a coach and enumerates
bookable slots from weekly availability plus date overrides.

Collision rule: every existing non-cancelled booking is expanded by its own
buffer, the candidate by its buffer, and the two expanded intervals are
tested with closed-open overlap. Two adjacent bookings therefore need a
combined gap of ``buffer_a + buffer_b`` minutes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.enums import BookingStatus
from ..core.exceptions import NotFoundException, SlotUnavailableException, ValidationException
from ..core.timezone_utils import (
    convert_time_string,
    ensure_utc,
    format_hhmm,
    local_to_utc,
    parse_hhmm,
)
from ..models.booking import Booking
from ..models.coach import AvailabilityOverride, WeeklyAvailability
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock

logger = logging.getLogger(__name__)

DEFAULT_DAY_START = "09:00"
DEFAULT_DAY_END = "17:00"
DEFAULT_SLOT_MINUTES = 30


@dataclass(frozen=True)
class BookedInterval:
    """Footprint of an existing booking as seen by the collision check."""

    start: datetime
    end: datetime
    buffer_minutes: int = 0
    status: str = BookingStatus.CONFIRMED.value
    booking_id: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookedInterval":
        return cls(
            start=ensure_utc(booking.scheduled_start),
            end=ensure_utc(booking.scheduled_end),
            buffer_minutes=booking.buffer_minutes or 0,
            status=booking.status,
            booking_id=booking.id,
        )

    def expanded(self) -> Tuple[datetime, datetime]:
        return expand_interval(self.start, self.end, self.buffer_minutes)


def expand_interval(start: datetime, end: datetime, buffer_minutes: int) -> Tuple[datetime, datetime]:
    pad = timedelta(minutes=max(0, buffer_minutes or 0))
    return ensure_utc(start) - pad, ensure_utc(end) + pad


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Closed-open overlap: touching endpoints do not collide."""
    return a_start < b_end and a_end > b_start


def find_conflicts(
    start: datetime,
    end: datetime,
    existing: Iterable[BookedInterval],
    buffer_minutes: int = 0,
) -> List[BookedInterval]:
    cand_start, cand_end = expand_interval(start, end, buffer_minutes)
    conflicts = []
    for interval in existing:
        if interval.status == BookingStatus.CANCELLED.value:
            continue
        ex_start, ex_end = interval.expanded()
        if intervals_overlap(cand_start, cand_end, ex_start, ex_end):
            conflicts.append(interval)
    return conflicts


def is_slot_available(
    start: datetime,
    end: datetime,
    existing: Iterable[BookedInterval],
    buffer_minutes: int = 0,
    *,
    now: datetime,
) -> bool:
    if ensure_utc(start) < ensure_utc(now):
        return False
    return not find_conflicts(start, end, existing, buffer_minutes)


@dataclass(frozen=True)
class SlotCheck:
    valid: bool
    reason: Optional[str] = None
    conflicting_booking_ids: Tuple[str, ...] = ()


def validate_booking_slot(
    start: datetime,
    end: datetime,
    existing: Iterable[BookedInterval],
    buffer_minutes: int = 0,
    *,
    now: datetime,
) -> SlotCheck:
    if ensure_utc(end) <= ensure_utc(start):
        return SlotCheck(False, "Scheduled end time must be after start time")
    if ensure_utc(start) < ensure_utc(now):
        return SlotCheck(False, "Cannot book in the past")
    conflicts = find_conflicts(start, end, existing, buffer_minutes)
    if conflicts:
        return SlotCheck(
            False,
            "Time slot is not available",
            tuple(c.booking_id for c in conflicts if c.booking_id),
        )
    return SlotCheck(True)


# Availability windows


@dataclass(frozen=True)
class AvailabilityWindow:
    start_time: str  # HH:MM coach-local
    end_time: str


def day_of_week_sunday_first(day: date) -> int:
    """0=Sunday .. 6=Saturday, the convention weekly availability is stored in."""
    return (day.weekday() + 1) % 7


def effective_availability(
    day: date,
    weekly: Sequence[WeeklyAvailability],
    overrides: Sequence[AvailabilityOverride],
) -> List[AvailabilityWindow]:
    """
    Windows a coach is bookable on ``day``.

    An override for the date replaces the weekly entries entirely; an
    unavailable override blocks the date. Override times fall back to the
    weekly entry's times, then to the default working day.
    """
    dow = day_of_week_sunday_first(day)
    weekly_for_day = [w for w in weekly if w.day_of_week == dow]
    override = next((o for o in overrides if o.date == day), None)

    if override is not None:
        if not override.is_available:
            return []
        first = weekly_for_day[0] if weekly_for_day else None
        return [
            AvailabilityWindow(
                start_time=override.start_time or (first.start_time if first else DEFAULT_DAY_START),
                end_time=override.end_time or (first.end_time if first else DEFAULT_DAY_END),
            )
        ]

    return [
        AvailabilityWindow(w.start_time, w.end_time) for w in weekly_for_day if w.is_available
    ]


class SlotSequence:
    """
    Lazy, finite, restartable sequence of bookable "HH:MM" slot starts.

    Each iteration re-walks the windows, so the sequence can be consumed
    more than once. Times are coach-local.
    """

    def __init__(
        self,
        day: date,
        windows: Sequence[AvailabilityWindow],
        *,
        slot_minutes: int,
        coach_time_zone: str,
        existing: Sequence[BookedInterval],
        buffer_minutes: int = 0,
        now: datetime,
    ) -> None:
        if slot_minutes <= 0:
            raise ValueError("slot_minutes must be positive")
        self.day = day
        self.windows = tuple(windows)
        self.slot_minutes = slot_minutes
        self.coach_time_zone = coach_time_zone
        self.existing = tuple(existing)
        self.buffer_minutes = buffer_minutes
        self.now = ensure_utc(now)

    def _window_starts(self, window: AvailabilityWindow) -> Iterator[int]:
        start = parse_hhmm(window.start_time)
        end = parse_hhmm(window.end_time)
        start_min = start.hour * 60 + start.minute
        end_min = end.hour * 60 + end.minute
        minute = start_min
        while minute + self.slot_minutes <= end_min:
            yield minute
            minute += self.slot_minutes

    def __iter__(self) -> Iterator[str]:
        step = timedelta(minutes=self.slot_minutes)
        for window in self.windows:
            for minute in self._window_starts(window):
                label = format_hhmm(parse_hhmm(f"{minute // 60}:{minute % 60}"))
                slot_start = local_to_utc(self.day, parse_hhmm(label), self.coach_time_zone)
                if is_slot_available(
                    slot_start,
                    slot_start + step,
                    self.existing,
                    self.buffer_minutes,
                    now=self.now,
                ):
                    yield label

    def to_list(self) -> List[str]:
        return list(self)


def to_viewer_time_zone(
    slots: Iterable[str], day: date, coach_time_zone: str, viewer_time_zone: str
) -> List[str]:
    """Display transform; the coach-local schedule itself is never rewritten."""
    return [convert_time_string(s, day, coach_time_zone, viewer_time_zone) for s in slots]


@dataclass(frozen=True)
class AvailableSlots:
    coach_id: str
    date: date
    time_zone: str
    slot_minutes: int
    slots: List[str]
    viewer_time_zone: Optional[str] = None
    display_slots: Optional[List[str]] = None


class SlotAvailabilityService(BaseService):
    """Loads schedules and bookings and applies the availability engine to them."""

    def __init__(self, db: Session, *, clock: Optional[Clock] = None):
        super().__init__(db, clock=clock)
        self.coach_repository = RepositoryFactory.create_coach_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    def load_existing(
        self,
        coach_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> List[BookedInterval]:
        """Non-cancelled bookings near ``[start, end)``, read now."""
        margin = timedelta(days=1)
        bookings = self.booking_repository.get_active_for_coach(
            coach_id,
            exclude_booking_id=exclude_booking_id,
            window_start=ensure_utc(start) - margin,
            window_end=ensure_utc(end) + margin,
        )
        return [BookedInterval.from_booking(b) for b in bookings]

    def ensure_slot_available(
        self,
        coach_id: str,
        start: datetime,
        end: datetime,
        buffer_minutes: int = 0,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        """Raise ``SlotUnavailableException`` when the interval cannot be booked."""
        existing = self.load_existing(coach_id, start, end, exclude_booking_id=exclude_booking_id)
        check = validate_booking_slot(start, end, existing, buffer_minutes, now=self.now())
        if not check.valid:
            raise SlotUnavailableException(
                check.reason,
                details={
                    "coach_id": coach_id,
                    "start": ensure_utc(start).isoformat(),
                    "end": ensure_utc(end).isoformat(),
                    "conflicting_booking_ids": list(check.conflicting_booking_ids),
                },
            )

    @BaseService.measure_operation("get_available_slots")
    def get_available_slots(
        self,
        coach_id: str,
        on_date: date,
        *,
        slot_minutes: int = DEFAULT_SLOT_MINUTES,
        buffer_minutes: Optional[int] = None,
        viewer_time_zone: Optional[str] = None,
    ) -> AvailableSlots:
        if slot_minutes <= 0 or slot_minutes > 24 * 60:
            raise ValidationException("Slot duration must be between 1 and 1440 minutes")

        coach = self.coach_repository.get_by_id(coach_id)
        if not coach:
            raise NotFoundException("Coach not found", details={"coach_id": coach_id})

        windows = effective_availability(
            on_date,
            self.coach_repository.get_weekly_availability(coach_id),
            self.coach_repository.get_overrides(coach_id, on_date),
        )
        day_start = local_to_utc(on_date, parse_hhmm("00:00"), coach.timezone)
        existing = self.load_existing(coach_id, day_start, day_start + timedelta(days=1))

        sequence = SlotSequence(
            on_date,
            windows,
            slot_minutes=slot_minutes,
            coach_time_zone=coach.timezone,
            existing=existing,
            buffer_minutes=coach.default_buffer_minutes if buffer_minutes is None else buffer_minutes,
            now=self.now(),
        )
        slots = sequence.to_list()

        display = None
        if viewer_time_zone and viewer_time_zone != coach.timezone:
            display = to_viewer_time_zone(slots, on_date, coach.timezone, viewer_time_zone)

        return AvailableSlots(
            coach_id=coach_id,
            date=on_date,
            time_zone=coach.timezone,
            slot_minutes=slot_minutes,
            slots=slots,
            viewer_time_zone=viewer_time_zone,
            display_slots=display,
        )
