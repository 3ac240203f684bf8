"""Purchase ledger data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import PurchaseStatus
from ..core.exceptions import RepositoryException
from ..models.payment import Purchase
from .base_repository import BaseRepository


class PurchaseRepository(BaseRepository[Purchase]):
    def __init__(self, db: Session):
        super().__init__(db, Purchase)

    def get_for_booking(self, booking_id: str) -> Optional[Purchase]:
        """Most recent purchase recorded for a booking, whatever its status."""
        try:
            return (
                self.db.query(Purchase)
                .filter(Purchase.booking_id == booking_id)
                .order_by(Purchase.created_at.desc(), Purchase.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading purchase for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load purchase: {str(e)}")

    def get_latest_paid_for_booking(self, booking_id: str) -> Optional[Purchase]:
        try:
            return (
                self.db.query(Purchase)
                .filter(
                    Purchase.booking_id == booking_id,
                    Purchase.status == PurchaseStatus.PAID.value,
                )
                .order_by(Purchase.created_at.desc(), Purchase.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading paid purchase for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load purchase: {str(e)}")

    def get_by_payment_reference(self, payment_intent_id: str) -> Optional[Purchase]:
        try:
            return (
                self.db.query(Purchase)
                .filter(Purchase.payment_intent_id == payment_intent_id)
                .order_by(Purchase.created_at.desc(), Purchase.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading purchase by payment reference: {str(e)}")
            raise RepositoryException(f"Failed to load purchase: {str(e)}")

    def get_by_checkout_session(self, checkout_session_id: str) -> Optional[Purchase]:
        return self.find_one_by(stripe_checkout_session_id=checkout_session_id)

    def list_for_coach(self, coach_id: str) -> List[Purchase]:
        return self.find_by(coach_id=coach_id)

    def sum_platform_fees(
        self, coach_id: str, period_start: datetime, period_end: datetime
    ) -> int:
        """Platform fees of paid purchases created in ``[period_start, period_end)``."""
        try:
            purchases = (
                self.db.query(Purchase)
                .filter(
                    Purchase.coach_id == coach_id,
                    Purchase.status == PurchaseStatus.PAID.value,
                    Purchase.created_at >= period_start,
                    Purchase.created_at < period_end,
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error summing platform fees for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to sum platform fees: {str(e)}")
        return sum(p.platform_fee_cents or 0 for p in purchases)
