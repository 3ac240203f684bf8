"""Booking data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BookingStatus, BookingType
from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_active_for_coach(
        self,
        coach_id: str,
        *,
        exclude_booking_id: Optional[str] = None,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[Booking]:
        """
        Non-cancelled bookings of a coach, read at the time of the call.

        The optional window is a coarse pre-filter on ``scheduled_start``;
        callers widen it by the largest buffer they care about.
        """
        try:
            query = self.db.query(Booking).filter(
                Booking.coach_id == coach_id,
                Booking.status != BookingStatus.CANCELLED.value,
            )
            if exclude_booking_id:
                query = query.filter(Booking.id != exclude_booking_id)
            if window_start is not None:
                query = query.filter(Booking.scheduled_end >= window_start)
            if window_end is not None:
                query = query.filter(Booking.scheduled_start <= window_end)
            return query.order_by(Booking.scheduled_start).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading bookings for coach {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to load bookings: {str(e)}")

    def count_free_intros_since(self, student_id: str, coach_id: str, since: datetime) -> int:
        """Free intros the student created with the coach since ``since``, any status."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.student_id == student_id,
                    Booking.coach_id == coach_id,
                    Booking.type == BookingType.FREE_INTRO.value,
                    Booking.created_at >= since,
                )
                .count()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting free intros: {str(e)}")
            raise RepositoryException(f"Failed to count free intros: {str(e)}")

    def get_by_checkout_session(self, checkout_session_id: str) -> Optional[Booking]:
        return self.find_one_by(stripe_checkout_session_id=checkout_session_id)
