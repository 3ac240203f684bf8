# backend/coachline/repositories/factory.py
"""
Repository Factory for the Coachline platform.

Centralizes repository creation so services get consistently initialized
instances and tests can patch a single seam.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .coach_repository import CoachRepository
    from .dispute_repository import DisputeRepository
    from .payout_repository import PayoutRepository
    from .purchase_repository import PurchaseRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_coach_repository(db: Session) -> "CoachRepository":
        from .coach_repository import CoachRepository

        return CoachRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_purchase_repository(db: Session) -> "PurchaseRepository":
        from .purchase_repository import PurchaseRepository

        return PurchaseRepository(db)

    @staticmethod
    def create_payout_repository(db: Session) -> "PayoutRepository":
        from .payout_repository import PayoutRepository

        return PayoutRepository(db)

    @staticmethod
    def create_dispute_repository(db: Session) -> "DisputeRepository":
        from .dispute_repository import DisputeRepository

        return DisputeRepository(db)
