"""Coach, offering catalog and availability data access."""

from datetime import date
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.coach import AvailabilityOverride, Coach, CoachOffering, WeeklyAvailability
from .base_repository import BaseRepository


class CoachRepository(BaseRepository[Coach]):
    def __init__(self, db: Session):
        super().__init__(db, Coach)

    def get_weekly_availability(self, coach_id: str) -> List[WeeklyAvailability]:
        try:
            return (
                self.db.query(WeeklyAvailability)
                .filter(WeeklyAvailability.coach_id == coach_id)
                .order_by(WeeklyAvailability.day_of_week, WeeklyAvailability.start_time)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading weekly availability for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to load availability: {str(e)}")

    def get_overrides(
        self, coach_id: str, on_date: Optional[date] = None
    ) -> List[AvailabilityOverride]:
        try:
            query = self.db.query(AvailabilityOverride).filter(
                AvailabilityOverride.coach_id == coach_id
            )
            if on_date is not None:
                query = query.filter(AvailabilityOverride.date == on_date)
            return query.order_by(AvailabilityOverride.date).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading availability overrides for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to load availability overrides: {str(e)}")

    def get_offering(self, coach_id: str, offering_id: str) -> Optional[CoachOffering]:
        try:
            return (
                self.db.query(CoachOffering)
                .filter(
                    CoachOffering.id == offering_id,
                    CoachOffering.coach_id == coach_id,
                    CoachOffering.is_active.is_(True),
                )
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading offering {offering_id}: {str(e)}")
            raise RepositoryException(f"Failed to load offering: {str(e)}")

    def find_standard_offering(self, coach_id: str, minutes: int) -> Optional[CoachOffering]:
        """Standard (non-custom) active offering with exactly ``minutes`` duration."""
        try:
            return (
                self.db.query(CoachOffering)
                .filter(
                    CoachOffering.coach_id == coach_id,
                    CoachOffering.duration_minutes == minutes,
                    CoachOffering.is_custom.is_(False),
                    CoachOffering.is_active.is_(True),
                )
                .order_by(CoachOffering.created_at)
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding {minutes}-minute offering for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to load offering: {str(e)}")

    def get_by_stripe_account(self, stripe_account_id: str) -> Optional[Coach]:
        return self.find_one_by(stripe_account_id=stripe_account_id)

    def list_with_ids(self, coach_ids: List[str]) -> List[Coach]:
        if not coach_ids:
            return []
        try:
            return self.db.query(Coach).filter(Coach.id.in_(coach_ids)).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading coaches: {str(e)}")
            raise RepositoryException(f"Failed to load coaches: {str(e)}")
