# backend/coachline/services/stripe_webhook_service.py
"""
Stripe webhook processing.

Delivery is at-least-once and unordered, so every handler is idempotent:
- checkout.session.completed  confirms the booking or records a course purchase
- charge.refunded             reverses earnings for refunds issued outside the engine
- charge.dispute.*            mirrors disputes; lost ones reverse earnings
- transfer.updated            moves payouts to paid / failed
- account.updated             mirrors the coach's payout-account status
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.enums import DISPUTE_STATUSES_REVERSING_EARNINGS, DisputeStatus, StripeConnectStatus
from ..core.exceptions import InvalidTransitionException
from ..integrations.payment_processor import PaymentProcessor
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .booking_service import BookingService
from .payout_service import PayoutService
from .purchase_service import PurchaseService

logger = logging.getLogger(__name__)


def _from_unix(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def account_status(account: Dict[str, Any]) -> StripeConnectStatus:
    if account.get("charges_enabled") and account.get("payouts_enabled") and account.get("details_submitted"):
        return StripeConnectStatus.ACTIVE
    if account.get("charges_enabled") is False or account.get("payouts_enabled") is False:
        return StripeConnectStatus.RESTRICTED
    return StripeConnectStatus.PENDING


class StripeWebhookService(BaseService):
    def __init__(
        self,
        db: Session,
        payment_processor: PaymentProcessor,
        *,
        booking_service: Optional[BookingService] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.payment_processor = payment_processor
        self.booking_service = booking_service or BookingService(
            db, payment_processor=payment_processor, clock=clock
        )
        self.purchase_service = PurchaseService(db, clock=clock)
        self.payout_service = PayoutService(db, payment_processor, clock=clock)
        self.coach_repository = RepositoryFactory.create_coach_repository(db)
        self.purchase_repository = RepositoryFactory.create_purchase_repository(db)
        self.dispute_repository = RepositoryFactory.create_dispute_repository(db)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "charge.refunded": self._handle_charge_refunded,
            "charge.dispute.created": self._handle_dispute,
            "charge.dispute.updated": self._handle_dispute,
            "transfer.updated": self._handle_transfer_updated,
            "account.updated": self._handle_account_updated,
        }

    def verify_and_process(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify the signature, then dispatch. Invalid signatures raise ValidationException."""
        event = self.payment_processor.construct_webhook_event(payload, signature)
        return self.process_event(event)

    @BaseService.measure_operation("process_stripe_event")
    def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            self.logger.debug("Ignoring Stripe event", extra={"event_type": event_type})
            return {"received": True, "handled": False}
        self.logger.info(
            "Processing Stripe event", extra={"event_type": event_type, "event_id": event.get("id")}
        )
        return {"received": True, "handled": True, **handler(obj)}

    def _handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        if session.get("payment_status") not in (None, "paid"):
            return {"skipped": "payment not completed"}

        metadata = session.get("metadata") or {}
        kind = metadata.get("type", "session")

        if kind == "course":
            recorded = self.purchase_service.record_course_purchase(
                user_id=metadata.get("student_id") or metadata.get("user_id"),
                coach_id=metadata["coach_id"],
                course_id=metadata["course_id"],
                amount_cents=int(session.get("amount_total") or 0),
                checkout_session_id=session.get("id"),
                payment_intent_id=session.get("payment_intent"),
                currency=session.get("currency"),
            )
            return {"purchase_id": recorded.purchase.id, "created": recorded.created}

        booking_id = metadata.get("booking_id")
        if not booking_id:
            self.logger.warning("Checkout completed without booking id", extra={"session_id": session.get("id")})
            return {"skipped": "no booking"}
        try:
            result = self.booking_service.confirm_booking(
                booking_id,
                payment_intent_id=session.get("payment_intent"),
                checkout_session_id=session.get("id"),
                amount_cents=session.get("amount_total"),
            )
        except InvalidTransitionException as exc:
            # Paid for a booking that was cancelled meanwhile; needs operator attention
            self.logger.error(
                "Payment received for a booking that cannot be confirmed",
                extra={"booking_id": booking_id, "status": exc.details.get("status")},
            )
            return {"booking_id": booking_id, "error": exc.message}
        return {
            "booking_id": booking_id,
            "already_processed": result.already_processed,
            "purchase_id": result.purchase.id if result.purchase else None,
        }

    def _handle_charge_refunded(self, charge: Dict[str, Any]) -> Dict[str, Any]:
        payment_intent_id = charge.get("payment_intent")
        if not payment_intent_id:
            return {"skipped": "no payment intent"}
        with self.transaction():
            purchase = self.purchase_repository.get_by_payment_reference(payment_intent_id)
            if purchase is None:
                self.logger.warning(
                    "Refund for unknown purchase", extra={"payment_intent_id": payment_intent_id}
                )
                return {"skipped": "unknown purchase"}
            purchase = self.purchase_repository.get_by_id(purchase.id, for_update=True)
            total_refunded = min(int(charge.get("amount_refunded") or 0), purchase.amount_cents)
            delta = total_refunded - (purchase.refunded_amount_cents or 0)
            if delta <= 0:
                return {"purchase_id": purchase.id, "already_processed": True}
            reversed_cents = self.purchase_service.apply_refund(purchase, delta)
        return {"purchase_id": purchase.id, "refunded_cents": delta, "reversed_cents": reversed_cents}

    def _handle_dispute(self, dispute: Dict[str, Any]) -> Dict[str, Any]:
        status = dispute.get("status") or DisputeStatus.NEEDS_RESPONSE.value
        payment_intent_id = dispute.get("payment_intent")
        with self.transaction():
            purchase = (
                self.purchase_repository.get_by_payment_reference(payment_intent_id)
                if payment_intent_id
                else None
            )
            record = self.dispute_repository.get_by_stripe_id(dispute["id"])
            evidence_due = _from_unix((dispute.get("evidence_details") or {}).get("due_by"))
            if record is None:
                record = self.dispute_repository.create(
                    stripe_dispute_id=dispute["id"],
                    coach_id=purchase.coach_id if purchase else None,
                    purchase_id=purchase.id if purchase else None,
                    charge_id=dispute.get("charge"),
                    payment_intent_id=payment_intent_id,
                    amount_cents=int(dispute.get("amount") or 0),
                    reason=dispute.get("reason"),
                    status=status,
                    evidence_due_by=evidence_due,
                    details={"livemode": bool(dispute.get("livemode", False))},
                    created_at=self.now(),
                )
            else:
                record.status = status
                record.evidence_due_by = evidence_due or record.evidence_due_by

            reversed_cents = 0
            reversing = {s.value for s in DISPUTE_STATUSES_REVERSING_EARNINGS}
            if status in reversing and not record.earnings_reversed and purchase is not None:
                reversed_cents = self.purchase_service.reverse_all_earnings(purchase)
                record.earnings_reversed = True
            self.dispute_repository.flush()

        if status in (DisputeStatus.NEEDS_RESPONSE.value, DisputeStatus.WARNING_NEEDS_RESPONSE.value):
            self.logger.warning(
                "Dispute requires response",
                extra={"dispute_id": dispute["id"], "evidence_due_by": str(evidence_due)},
            )
        return {"dispute_id": record.id, "status": status, "reversed_cents": reversed_cents}

    def _handle_transfer_updated(self, transfer: Dict[str, Any]) -> Dict[str, Any]:
        failed = bool(transfer.get("failure_code") or transfer.get("failure_message"))
        paid = transfer.get("status") == "paid" or bool(transfer.get("destination_payment"))
        payout = self.payout_service.apply_transfer_update(
            transfer["id"], reversed=bool(transfer.get("reversed")), failed=failed, paid=paid
        )
        if payout is None:
            return {"skipped": "unknown transfer"}
        return {"payout_id": payout.id, "status": payout.status}

    def _handle_account_updated(self, account: Dict[str, Any]) -> Dict[str, Any]:
        coach_id = (account.get("metadata") or {}).get("coach_id")
        with self.transaction():
            coach = self.coach_repository.get_by_id(coach_id) if coach_id else None
            if coach is None and account.get("id"):
                coach = self.coach_repository.get_by_stripe_account(account["id"])
            if coach is None:
                self.logger.warning("Account update for unknown coach", extra={"account_id": account.get("id")})
                return {"skipped": "unknown account"}
            status = account_status(account)
            coach.stripe_connect_status = status.value
            if not coach.stripe_account_id:
                coach.stripe_account_id = account.get("id")
        return {"coach_id": coach.id, "stripe_connect_status": status.value}
