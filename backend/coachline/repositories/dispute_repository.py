"""Dispute data access."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.payment import Dispute
from .base_repository import BaseRepository


class DisputeRepository(BaseRepository[Dispute]):
    def __init__(self, db: Session):
        super().__init__(db, Dispute)

    def get_by_stripe_id(self, stripe_dispute_id: str) -> Optional[Dispute]:
        return self.find_one_by(stripe_dispute_id=stripe_dispute_id)

    def list_for_coach(self, coach_id: str) -> List[Dispute]:
        return self.find_by(coach_id=coach_id)
