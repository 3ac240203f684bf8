# backend/coachline/services/purchase_service.py
"""
Purchase ledger and pending-payout accounting.

Every change to a coach's PendingPayout balance goes through this service:
- crediting coach earnings when a payment is recorded
- reversing earnings proportionally when money goes back to the payer
- reversing all unsettled earnings when a dispute is lost

Methods flush only; the calling service owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import PurchaseStatus, PurchaseType
from ..core.exceptions import ConsistencyException, NotFoundException, ValidationException
from ..core.money import FeeSplit, proportional_share, split_payment
from ..models.payment import Purchase
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordedPayment:
    purchase: Purchase
    created: bool
    credited_cents: int = 0


def fee_split_for(amount_cents: int) -> FeeSplit:
    """Fee split using the configured platform percentage and floor."""
    return split_payment(
        amount_cents,
        percentage=settings.platform_fee_percentage,
        minimum_cents=settings.minimum_platform_fee_cents,
    )


class PurchaseService(BaseService):
    def __init__(self, db: Session, *, clock: Optional[Clock] = None):
        super().__init__(db, clock=clock)
        self.purchase_repository = RepositoryFactory.create_purchase_repository(db)
        self.payout_repository = RepositoryFactory.create_payout_repository(db)
        self.coach_repository = RepositoryFactory.create_coach_repository(db)

    def record_payment(
        self,
        *,
        user_id: str,
        coach_id: str,
        amount_cents: int,
        booking_id: Optional[str] = None,
        course_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> RecordedPayment:
        """
        Record one successful payment and credit the coach's pending balance.

        Idempotent on the checkout session: a second delivery of the same
        payment returns the existing purchase without crediting again.
        """
        if (booking_id is None) == (course_id is None):
            raise ValidationException("A purchase references exactly one booking or course")
        if amount_cents <= 0:
            raise ValidationException("Purchase amount must be positive")

        existing = None
        if checkout_session_id:
            existing = self.purchase_repository.get_by_checkout_session(checkout_session_id)
        if existing is None and booking_id:
            existing = self.purchase_repository.get_for_booking(booking_id)
        if existing is not None:
            self.logger.info(
                "Payment already recorded",
                extra={"purchase_id": existing.id, "checkout_session_id": checkout_session_id},
            )
            return RecordedPayment(purchase=existing, created=False)

        split = fee_split_for(amount_cents)
        now = self.now()
        purchase = self.purchase_repository.create(
            user_id=user_id,
            coach_id=coach_id,
            type=(PurchaseType.SESSION if booking_id else PurchaseType.COURSE).value,
            booking_id=booking_id,
            course_id=course_id,
            amount_cents=split.amount_cents,
            platform_fee_cents=split.platform_fee_cents,
            coach_earnings_cents=split.coach_earnings_cents,
            currency=(currency or settings.stripe_currency).lower(),
            stripe_checkout_session_id=checkout_session_id,
            payment_intent_id=payment_intent_id,
            status=PurchaseStatus.PAID.value,
            paid_at=now,
            created_at=now,
        )
        self.payout_repository.apply_pending_delta(
            coach_id, split.coach_earnings_cents, add_ids=[purchase.id]
        )
        self.log_operation(
            "record_payment",
            purchase_id=purchase.id,
            coach_id=coach_id,
            amount_cents=split.amount_cents,
            platform_fee_cents=split.platform_fee_cents,
            coach_earnings_cents=split.coach_earnings_cents,
        )
        return RecordedPayment(
            purchase=purchase, created=True, credited_cents=split.coach_earnings_cents
        )

    @BaseService.measure_operation("record_course_purchase")
    def record_course_purchase(
        self,
        *,
        user_id: str,
        coach_id: str,
        course_id: str,
        amount_cents: int,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> RecordedPayment:
        if not self.coach_repository.get_by_id(coach_id):
            raise NotFoundException("Coach not found", details={"coach_id": coach_id})
        with self.transaction():
            return self.record_payment(
                user_id=user_id,
                coach_id=coach_id,
                course_id=course_id,
                amount_cents=amount_cents,
                checkout_session_id=checkout_session_id,
                payment_intent_id=payment_intent_id,
                currency=currency,
            )

    def check_refundable(self, purchase: Purchase, amount_cents: int) -> None:
        """Raise before any processor call when a refund would exceed what is left."""
        if amount_cents > purchase.remaining_refundable_cents:
            raise ConsistencyException(
                "Refund amount exceeds the remaining refundable amount",
                code="REFUND_EXCEEDS_REMAINING",
                details={
                    "purchase_id": purchase.id,
                    "requested_cents": amount_cents,
                    "remaining_cents": purchase.remaining_refundable_cents,
                },
            )

    def apply_refund(
        self, purchase: Purchase, amount_cents: int, *, at: Optional[datetime] = None
    ) -> int:
        """
        Record ``amount_cents`` of money returned against ``purchase``.

        Returns the earnings removed from the coach's pending balance.
        """
        self.check_refundable(purchase, amount_cents)
        purchase.refunded_amount_cents = (purchase.refunded_amount_cents or 0) + amount_cents
        if purchase.remaining_refundable_cents == 0:
            purchase.status = PurchaseStatus.REFUNDED.value
            purchase.refunded_at = at or self.now()
        target = proportional_share(
            purchase.refunded_amount_cents, purchase.amount_cents, purchase.coach_earnings_cents
        )
        return self._reverse_earnings_to(purchase, target)

    def reverse_all_earnings(self, purchase: Purchase) -> int:
        """Pull every unsettled cent of ``purchase`` back out of pending (lost dispute)."""
        return self._reverse_earnings_to(purchase, purchase.coach_earnings_cents)

    def _reverse_earnings_to(self, purchase: Purchase, target_reversed_cents: int) -> int:
        delta = target_reversed_cents - (purchase.reversed_earnings_cents or 0)
        if delta <= 0:
            return 0
        purchase.reversed_earnings_cents = target_reversed_cents

        pending = self.payout_repository.get_pending(purchase.coach_id, for_update=True)
        if pending is None or purchase.id not in (pending.transaction_ids or []):
            # Already paid out; nothing left in pending to reverse
            self.purchase_repository.flush()
            self.logger.info(
                "Earnings reversal for settled purchase",
                extra={"purchase_id": purchase.id, "delta_cents": delta},
            )
            return 0

        remove = [purchase.id] if purchase.unsettled_earnings_cents == 0 else []
        self.payout_repository.apply_pending_delta(purchase.coach_id, -delta, remove_ids=remove)
        self.log_operation(
            "reverse_earnings",
            purchase_id=purchase.id,
            coach_id=purchase.coach_id,
            delta_cents=delta,
            removed_from_pending=bool(remove),
        )
        return delta
