# backend/coachline/services/refund_service.py
"""
Refund / Cancellation Engine.

Computes policy-bound refunds, issues them through the payment processor
and reverses the coach's share of the refunded money out of PendingPayout.

Processor calls run outside any database transaction:
- Phase 1: read the booking, quote the refund, resolve the payment
- Phase 2: call the processor (no transaction)
- Phase 3: record the outcome
A processor failure never raises out of ``execute_refund``; it comes back as
a failed ``RefundOutcome`` so cancellation can still proceed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import BookingStatus
from ..core.exceptions import ExternalServiceException, NotFoundException, ValidationException
from ..core.money import CancellationPolicy, RefundQuote, refund_amount
from ..integrations.payment_processor import PaymentProcessor
from ..models.booking import Booking
from ..models.payment import Purchase
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .purchase_service import PurchaseService

logger = logging.getLogger(__name__)

PROCESSOR_REFUND_REASON = "requested_by_customer"


@dataclass(frozen=True)
class RefundOutcome:
    ok: bool
    amount_cents: int
    reason: str
    refund_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    pending_reversed_cents: int = 0

    @classmethod
    def skip(cls, reason: str) -> "RefundOutcome":
        return cls(ok=True, amount_cents=0, reason=reason, skipped=True)

    @classmethod
    def failed(cls, amount_cents: int, reason: str, error: str) -> "RefundOutcome":
        return cls(ok=False, amount_cents=amount_cents, reason=reason, error=error)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "refund_id": self.refund_id,
            "error": self.error,
            "skipped": self.skipped,
        }


def default_policy() -> CancellationPolicy:
    return CancellationPolicy(
        full_refund_hours=settings.full_refund_hours,
        partial_refund_hours=settings.partial_refund_hours,
        partial_refund_percent=settings.partial_refund_percent,
    )


class RefundService(BaseService):
    """Quotes, issues and records refunds against bookings."""

    def __init__(
        self,
        db: Session,
        payment_processor: PaymentProcessor,
        *,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.payment_processor = payment_processor
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.purchase_repository = RepositoryFactory.create_purchase_repository(db)
        self.purchase_service = PurchaseService(db, clock=clock)

    def policy_for(self, booking: Booking) -> CancellationPolicy:
        """Booking override first, then the coach's policy, then configured defaults."""
        policy = CancellationPolicy.from_payload(booking.cancellation_policy)
        if policy is None and booking.coach is not None:
            policy = CancellationPolicy.from_payload(booking.coach.cancellation_policy)
        return policy or default_policy()

    def quote(self, booking: Booking, cancelled_at: Optional[datetime] = None) -> RefundQuote:
        return refund_amount(
            booking.start_utc,
            cancelled_at or self.now(),
            booking.price_cents or 0,
            self.policy_for(booking),
            is_free_intro=booking.is_free_intro,
        )

    def resolve_payment(self, booking: Booking) -> Tuple[Optional[str], Optional[Purchase]]:
        """
        Payment reference and purchase for a booking.

        The reference stored on the booking wins; otherwise the most recent
        paid purchase for the booking supplies it.
        """
        purchase = self.purchase_repository.get_latest_paid_for_booking(booking.id)
        reference = booking.payment_reference()
        if purchase is None and reference:
            purchase = self.purchase_repository.get_by_payment_reference(reference)
        if not reference and purchase is not None:
            reference = purchase.payment_intent_id
        return reference, purchase

    def execute_refund(
        self,
        *,
        booking_id: str,
        coach_id: str,
        payment_intent_id: Optional[str],
        amount_cents: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundOutcome:
        """Processor half of a refund. Never raises for processor failures."""
        if amount_cents <= 0:
            prometheus_metrics.record_refund("skipped")
            return RefundOutcome.skip(reason)
        if not payment_intent_id:
            prometheus_metrics.record_refund("failed")
            self.logger.error(
                "No payment reference for refund", extra={"booking_id": booking_id}
            )
            return RefundOutcome.failed(amount_cents, reason, "No payment found for this booking")

        try:
            intent = self.payment_processor.retrieve_payment_intent(payment_intent_id)
            if intent.status != "succeeded":
                prometheus_metrics.record_refund("failed")
                return RefundOutcome.failed(
                    amount_cents, reason, f"Payment not completed (status: {intent.status})"
                )
            if not intent.charge_id:
                prometheus_metrics.record_refund("failed")
                return RefundOutcome.failed(amount_cents, reason, "No charge found for payment")

            refund = self.payment_processor.create_refund(
                intent.charge_id,
                amount_cents,
                PROCESSOR_REFUND_REASON,
                {
                    "booking_id": booking_id,
                    "coach_id": coach_id,
                    "refund_reason": reason,
                },
                idempotency_key=idempotency_key,
            )
        except ExternalServiceException as exc:
            prometheus_metrics.record_refund("failed")
            self.logger.error(
                "Refund failed",
                extra={"booking_id": booking_id, "amount_cents": amount_cents, "error": exc.message},
            )
            return RefundOutcome.failed(amount_cents, reason, exc.message)

        prometheus_metrics.record_refund("succeeded")
        self.logger.info(
            "Refund issued",
            extra={"booking_id": booking_id, "refund_id": refund.id, "amount_cents": refund.amount_cents},
        )
        return RefundOutcome(
            ok=True, amount_cents=refund.amount_cents, reason=reason, refund_id=refund.id
        )

    def record_refund(
        self,
        booking: Booking,
        purchase: Optional[Purchase],
        outcome: RefundOutcome,
        *,
        on_booking: bool,
        refunded_before_cents: Optional[int] = None,
    ) -> RefundOutcome:
        """
        Database half of a refund (flush only).

        Cancellation refunds are written onto the booking; every successful
        refund is applied to the purchase and reverses the coach's share.

        ``refunded_before_cents`` is the purchase's refunded total when the
        refund was quoted. Money recorded against the purchase since then
        (a ``charge.refunded`` webhook that won the race) counts toward this
        refund, so the same refund is never applied twice. An over-refund is
        clamped, never raised.
        """
        if outcome.skipped:
            return outcome
        if not outcome.ok:
            if on_booking:
                booking.refund_error = outcome.error
            self.booking_repository.flush()
            return outcome

        if on_booking:
            booking.refund_id = outcome.refund_id
            booking.refund_amount_cents = outcome.amount_cents
            booking.refund_error = None

        reversed_cents = 0
        if purchase is not None:
            reversed_cents = self._apply_to_purchase(purchase, outcome, refunded_before_cents)
        else:
            self.logger.warning(
                "Refund issued without a matching purchase",
                extra={"booking_id": booking.id, "refund_id": outcome.refund_id},
            )
        self.booking_repository.flush()
        return RefundOutcome(
            ok=True,
            amount_cents=outcome.amount_cents,
            reason=outcome.reason,
            refund_id=outcome.refund_id,
            pending_reversed_cents=reversed_cents,
        )

    def _apply_to_purchase(
        self, purchase: Purchase, outcome: RefundOutcome, refunded_before_cents: Optional[int]
    ) -> int:
        amount = outcome.amount_cents
        if refunded_before_cents is not None:
            recorded_since = max(0, (purchase.refunded_amount_cents or 0) - refunded_before_cents)
            amount = max(0, amount - recorded_since)
        if amount > purchase.remaining_refundable_cents:
            self.logger.warning(
                "Refund exceeds the purchase's remaining amount, clamping",
                extra={
                    "purchase_id": purchase.id,
                    "refund_id": outcome.refund_id,
                    "amount_cents": amount,
                    "remaining_cents": purchase.remaining_refundable_cents,
                },
            )
            amount = purchase.remaining_refundable_cents
        if amount <= 0:
            self.logger.info(
                "Refund already recorded on purchase",
                extra={"purchase_id": purchase.id, "refund_id": outcome.refund_id},
            )
            return 0
        return self.purchase_service.apply_refund(purchase, amount, at=self.now())

    @BaseService.measure_operation("refund_booking")
    def refund_booking(
        self,
        booking_id: str,
        amount_cents: int,
        reason: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Refund part of a paid booking without cancelling it.

        Used for price differences after a reschedule. The refund is recorded
        on the purchase, not in the booking's cancellation refund fields.
        """
        if amount_cents <= 0:
            raise ValidationException("Refund amount must be positive")

        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id)
            if not booking:
                raise NotFoundException("Booking not found", details={"booking_id": booking_id})
            if booking.status != BookingStatus.CONFIRMED.value:
                raise ValidationException(
                    "Only confirmed bookings can receive a partial refund",
                    details={"booking_id": booking_id, "status": booking.status},
                )
            reference, purchase = self.resolve_payment(booking)
            if purchase is not None:
                self.purchase_service.check_refundable(purchase, amount_cents)
            context = {
                "booking_id": booking.id,
                "coach_id": booking.coach_id,
                "payment_intent_id": reference,
                "purchase_id": purchase.id if purchase else None,
                "refunded_before_cents": (purchase.refunded_amount_cents or 0) if purchase else None,
            }

        outcome = self.execute_refund(
            booking_id=context["booking_id"],
            coach_id=context["coach_id"],
            payment_intent_id=context["payment_intent_id"],
            amount_cents=amount_cents,
            reason=reason,
            idempotency_key=idempotency_key or f"refund:{booking_id}:{amount_cents}",
        )
        if not outcome.ok:
            return outcome

        with self.transaction():
            booking = self.booking_repository.get_by_id(booking_id)
            purchase = (
                self.purchase_repository.get_by_id(context["purchase_id"], for_update=True)
                if context["purchase_id"]
                else None
            )
            return self.record_refund(
                booking,
                purchase,
                outcome,
                on_booking=False,
                refunded_before_cents=context["refunded_before_cents"],
            )
