"""
PendingPayout and Payout data access.

Every PendingPayout mutation goes through ``apply_pending_delta`` or
``settle_pending``, which read the coach's row under a row lock and write the
new balance in the same flush, so concurrent purchase and refund events for
one coach serialize on the database.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import PayoutStatus
from ..core.exceptions import RepositoryException
from ..models.payment import PendingPayout, Payout
from .base_repository import BaseRepository


class PayoutRepository(BaseRepository[Payout]):
    def __init__(self, db: Session):
        super().__init__(db, Payout)

    # PendingPayout aggregate

    def get_pending(self, coach_id: str, *, for_update: bool = False) -> Optional[PendingPayout]:
        try:
            query = self.db.query(PendingPayout).filter(PendingPayout.coach_id == coach_id)
            if for_update:
                query = query.with_for_update().populate_existing()
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading pending payout for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to load pending payout: {str(e)}")

    def _get_or_create_pending_locked(self, coach_id: str) -> PendingPayout:
        pending = self.get_pending(coach_id, for_update=True)
        if pending is None:
            pending = PendingPayout(coach_id=coach_id, amount_cents=0, transaction_ids=[])
            self.db.add(pending)
            self.db.flush()
        return pending

    def apply_pending_delta(
        self,
        coach_id: str,
        delta_cents: int,
        *,
        add_ids: Iterable[str] = (),
        remove_ids: Iterable[str] = (),
    ) -> PendingPayout:
        """
        Atomically add ``delta_cents`` (negative to subtract) to a coach's balance.

        The balance never drops below zero. Transaction ids are added or
        removed in the same write.
        """
        try:
            pending = self._get_or_create_pending_locked(coach_id)
            before = pending.amount_cents or 0
            pending.amount_cents = max(0, before + delta_cents)

            removed = set(remove_ids)
            ids = [tid for tid in (pending.transaction_ids or []) if tid not in removed]
            for tid in add_ids:
                if tid not in ids:
                    ids.append(tid)
            # Reassign so the JSON column is flagged dirty
            pending.transaction_ids = ids
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Error applying pending delta for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to update pending payout: {str(e)}")

        if before + delta_cents < 0:
            self.logger.warning(
                "Pending payout clamped at zero",
                extra={"coach_id": coach_id, "before": before, "delta_cents": delta_cents},
            )
        return pending

    def settle_pending(
        self, coach_id: str, amount_cents: int, transaction_ids: Iterable[str]
    ) -> PendingPayout:
        """Roll a transferred amount and its transaction ids out of the pending balance."""
        settled = list(transaction_ids)
        return self.apply_pending_delta(coach_id, -amount_cents, remove_ids=settled)

    def list_pending_at_least(self, minimum_cents: int) -> List[PendingPayout]:
        try:
            return (
                self.db.query(PendingPayout)
                .filter(PendingPayout.amount_cents >= minimum_cents)
                .order_by(PendingPayout.coach_id)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing eligible pending payouts: {str(e)}")
            raise RepositoryException(f"Failed to list pending payouts: {str(e)}")

    # Payout records

    def get_by_idempotency_key(self, key: str) -> Optional[Payout]:
        return self.find_one_by(idempotency_key=key)

    def get_by_transfer_id(self, transfer_id: str) -> Optional[Payout]:
        return self.find_one_by(stripe_transfer_id=transfer_id)

    def list_for_coach(self, coach_id: str) -> List[Payout]:
        try:
            return (
                self.db.query(Payout)
                .filter(Payout.coach_id == coach_id)
                .order_by(Payout.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing payouts for {coach_id}: {str(e)}")
            raise RepositoryException(f"Failed to list payouts: {str(e)}")

    def mark_status(
        self,
        payout: Payout,
        status: PayoutStatus,
        *,
        failure_reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Payout:
        payout.status = status.value
        if status == PayoutStatus.PAID:
            payout.paid_at = at
            payout.failure_reason = None
        elif status == PayoutStatus.FAILED:
            payout.failure_reason = failure_reason
        self.flush()
        return payout
