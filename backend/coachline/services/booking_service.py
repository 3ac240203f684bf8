# backend/coachline/services/booking_service.py
"""
Booking Service for the Coachline platform.

Owns the booking state machine:

    requested -> confirmed -> completed
    requested | confirmed -> cancelled

``completed`` and ``cancelled`` are terminal. Slot-checked writes (create,
reschedule) run under a per-coach lock so the availability read and the
insert cannot interleave with another request for the same coach.

Scheduling-provider mirroring and calendar sync are best-effort: they run
after the state change is committed and are reported as side-effect results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.booking_lock import coach_slot_lock
from ..core.config import settings
from ..core.enums import BookingStatus, BookingType, CancelledBy
from ..core.exceptions import (
    ConsistencyException,
    DuplicateFreeIntroException,
    InvalidTransitionException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc
from ..integrations.calcom_client import CalComClient
from ..integrations.calendar_sync_client import CalendarAction, CalendarSyncClient
from ..integrations.payment_processor import PaymentProcessor
from ..models.booking import Booking
from ..models.coach import Coach, CoachOffering
from ..models.payment import Purchase
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .purchase_service import PurchaseService, fee_split_for
from .refund_service import RefundOutcome, RefundService
from .side_effects import SideEffectResult, run_side_effect
from .slot_availability import DEFAULT_SLOT_MINUTES, AvailableSlots, SlotAvailabilityService

logger = logging.getLogger(__name__)

SlotLock = Callable[[str], ContextManager[None]]


@dataclass
class BookingResult:
    """Outcome of a booking transition plus any secondary effects."""

    booking: Booking
    side_effects: List[SideEffectResult] = field(default_factory=list)
    checkout_url: Optional[str] = None
    purchase: Optional[Purchase] = None
    refund: Optional[RefundOutcome] = None
    price_delta_cents: int = 0
    already_processed: bool = False

    @property
    def error(self) -> Optional[str]:
        """First secondary failure, surfaced next to a successful transition."""
        if self.refund is not None and not self.refund.ok:
            return self.refund.error
        for effect in self.side_effects:
            if not effect.ok:
                return effect.error
        return None


@dataclass(frozen=True)
class ResolvedOffering:
    offering_id: Optional[str]
    minutes: int
    price_cents: int
    buffer_minutes: int


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Collaborators are injected so tests can pass fakes:
    payment processor, scheduling provider, calendar sync and the slot lock.
    """

    def __init__(
        self,
        db: Session,
        *,
        payment_processor: Optional[PaymentProcessor] = None,
        calcom_client: Optional[CalComClient] = None,
        calendar_client: Optional[CalendarSyncClient] = None,
        clock: Optional[Clock] = None,
        slot_lock: Optional[SlotLock] = None,
    ):
        super().__init__(db, clock=clock)
        self.payment_processor = payment_processor
        self.calcom_client = calcom_client
        self.calendar_client = calendar_client
        self.slot_lock: SlotLock = slot_lock or coach_slot_lock
        self.repository = RepositoryFactory.create_booking_repository(db)
        self.coach_repository = RepositoryFactory.create_coach_repository(db)
        self.purchase_repository = RepositoryFactory.create_purchase_repository(db)
        self.availability = SlotAvailabilityService(db, clock=clock)
        self.purchase_service = PurchaseService(db, clock=clock)

    def _require_processor(self) -> PaymentProcessor:
        if self.payment_processor is None:
            raise ServiceException("Payment processor is not configured", code="PROCESSOR_NOT_CONFIGURED")
        return self.payment_processor

    def _refund_service(self) -> RefundService:
        return RefundService(self.db, self._require_processor(), clock=self.clock)

    def _get_booking(self, booking_id: str, *, for_update: bool = False) -> Booking:
        booking = self.repository.get_by_id(booking_id, for_update=for_update)
        if not booking:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    def _get_coach(self, coach_id: str) -> Coach:
        coach = self.coach_repository.get_by_id(coach_id)
        if not coach:
            raise NotFoundException("Coach not found", details={"coach_id": coach_id})
        return coach

    def _resolve_offering(
        self,
        coach: Coach,
        *,
        offering_id: Optional[str],
        session_minutes: Optional[int],
    ) -> ResolvedOffering:
        """Custom offering by id, else the standard offering matching the duration."""
        offering: Optional[CoachOffering] = None
        if offering_id:
            offering = self.coach_repository.get_offering(coach.id, offering_id)
        elif session_minutes:
            offering = self.coach_repository.find_standard_offering(coach.id, session_minutes)
        if offering is None:
            raise ValidationException(
                "Session type not available",
                details={"offering_id": offering_id, "session_minutes": session_minutes},
            )
        buffer = (
            offering.buffer_minutes
            if offering.buffer_minutes is not None
            else coach.default_buffer_minutes or 0
        )
        return ResolvedOffering(
            offering_id=offering.id,
            minutes=offering.duration_minutes,
            price_cents=offering.price_cents,
            buffer_minutes=buffer,
        )

    @staticmethod
    def _ensure_transition(booking: Booking, action: str, allowed: frozenset) -> None:
        if booking.booking_status not in allowed:
            raise InvalidTransitionException(booking.id, booking.status, action)

    # Side effects

    def _calendar_effect(self, booking: Booking, action: CalendarAction) -> SideEffectResult:
        name = f"calendar_{action.value}"
        if self.calendar_client is None:
            return SideEffectResult.skip(name, "Calendar sync not configured")
        client = self.calendar_client
        return run_side_effect(
            name,
            lambda: client.sync(booking.id, action),
            context={"booking_id": booking.id},
        )

    def _mirror_create(self, booking: Booking, coach: Coach) -> SideEffectResult:
        name = "scheduling_create"
        if self.calcom_client is None or not coach.calcom_event_type_id:
            return SideEffectResult.skip(name, "Scheduling provider not configured")
        if not booking.student_email:
            return SideEffectResult.skip(name, "No attendee email")
        client = self.calcom_client
        result = run_side_effect(
            name,
            lambda: client.create_booking(
                event_type_id=coach.calcom_event_type_id,
                start=booking.start_utc,
                end=booking.end_utc,
                attendee_email=booking.student_email,
                attendee_name=booking.student_name or booking.student_email,
                time_zone=booking.time_zone,
                metadata={"booking_id": booking.id, "coach_id": coach.id},
            ),
            context={"booking_id": booking.id},
        )
        external_id = result.data.get("uid") or result.data.get("id")
        if result.ok and external_id:
            with self.transaction():
                booking.external_booking_id = str(external_id)
        return result

    def _mirror(self, booking: Booking, name: str, call: Callable[[CalComClient, str], Any]) -> SideEffectResult:
        if self.calcom_client is None or not booking.external_booking_id:
            return SideEffectResult.skip(name, "Booking is not mirrored")
        client = self.calcom_client
        external_id = booking.external_booking_id
        return run_side_effect(
            name, lambda: call(client, external_id), context={"booking_id": booking.id}
        )

    # Create

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        *,
        coach_id: str,
        student_id: str,
        scheduled_start: datetime,
        session_minutes: Optional[int] = None,
        offering_id: Optional[str] = None,
        student_email: Optional[str] = None,
        student_name: Optional[str] = None,
        time_zone: Optional[str] = None,
    ) -> BookingResult:
        """
        Create a paid booking in ``requested`` and open a checkout for it.

        Raises:
            NotFoundException: coach does not exist
            ValidationException: unknown session type or slot unavailable
            ConsistencyException: coach has no payout account
            ExternalServiceException: checkout could not be created
        """
        processor = self._require_processor()
        coach = self._get_coach(coach_id)
        resolved = self._resolve_offering(
            coach, offering_id=offering_id, session_minutes=session_minutes
        )
        if not coach.has_payout_account:
            raise ConsistencyException(
                "Coach has not set up payouts yet",
                code="NO_PAYOUT_ACCOUNT",
                details={"coach_id": coach_id},
            )

        start = ensure_utc(scheduled_start)
        end = start + timedelta(minutes=resolved.minutes)
        split = fee_split_for(resolved.price_cents)

        with self.slot_lock(coach_id):
            with self.transaction():
                self.availability.ensure_slot_available(
                    coach_id, start, end, resolved.buffer_minutes
                )
                booking = self.repository.create(
                    coach_id=coach_id,
                    student_id=student_id,
                    student_email=student_email,
                    student_name=student_name,
                    type=BookingType.PAID.value,
                    offering_id=resolved.offering_id,
                    session_minutes=resolved.minutes,
                    price_cents=resolved.price_cents,
                    currency=settings.stripe_currency,
                    status=BookingStatus.REQUESTED.value,
                    scheduled_start=start,
                    scheduled_end=end,
                    buffer_minutes=resolved.buffer_minutes,
                    time_zone=time_zone or coach.timezone or settings.default_time_zone,
                    created_at=self.now(),
                )
                checkout = processor.create_checkout(
                    resolved.price_cents,
                    settings.stripe_currency,
                    coach.stripe_account_id,
                    {
                        "type": "session",
                        "booking_id": booking.id,
                        "coach_id": coach_id,
                        "student_id": student_id,
                        "platform_fee_cents": split.platform_fee_cents,
                        "coach_earnings_cents": split.coach_earnings_cents,
                    },
                    description=f"{resolved.minutes}-minute session with {coach.display_name}",
                    idempotency_key=f"checkout:{booking.id}",
                )
                booking.stripe_checkout_session_id = checkout.id

        prometheus_metrics.record_booking_transition("create")
        self.log_operation(
            "create_booking",
            booking_id=booking.id,
            coach_id=coach_id,
            price_cents=booking.price_cents,
        )
        effects = [self._mirror_create(booking, coach)]
        return BookingResult(booking=booking, side_effects=effects, checkout_url=checkout.url)

    @BaseService.measure_operation("create_free_intro")
    def create_free_intro(
        self,
        *,
        coach_id: str,
        student_id: str,
        scheduled_start: datetime,
        student_email: Optional[str] = None,
        student_name: Optional[str] = None,
        time_zone: Optional[str] = None,
        buffer_minutes: Optional[int] = None,
    ) -> BookingResult:
        """
        Create a free intro session directly in ``confirmed``.

        One free intro per (student, coach) in the rolling window, counting
        intros in any status.
        """
        coach = self._get_coach(coach_id)
        if not coach.free_intro_enabled:
            raise ValidationException("Free intro not available for this coach")
        if not coach.free_intro_minutes or coach.free_intro_minutes <= 0:
            raise ConsistencyException("Invalid free intro duration configuration")

        start = ensure_utc(scheduled_start)
        end = start + timedelta(minutes=coach.free_intro_minutes)
        buffer = coach.default_buffer_minutes if buffer_minutes is None else buffer_minutes
        window_days = settings.free_intro_window_days

        with self.slot_lock(coach_id):
            with self.transaction():
                now = self.now()
                recent = self.repository.count_free_intros_since(
                    student_id, coach_id, now - timedelta(days=window_days)
                )
                if recent > 0:
                    raise DuplicateFreeIntroException(coach_id, student_id, window_days)
                self.availability.ensure_slot_available(coach_id, start, end, buffer or 0)
                booking = self.repository.create(
                    coach_id=coach_id,
                    student_id=student_id,
                    student_email=student_email,
                    student_name=student_name,
                    type=BookingType.FREE_INTRO.value,
                    session_minutes=coach.free_intro_minutes,
                    price_cents=0,
                    currency=settings.stripe_currency,
                    status=BookingStatus.CONFIRMED.value,
                    scheduled_start=start,
                    scheduled_end=end,
                    buffer_minutes=buffer or 0,
                    time_zone=time_zone or coach.timezone or settings.default_time_zone,
                    confirmed_at=now,
                    created_at=now,
                )

        prometheus_metrics.record_booking_transition("create_free_intro")
        self.log_operation("create_free_intro", booking_id=booking.id, coach_id=coach_id)
        effects = [
            self._mirror_create(booking, coach),
            self._calendar_effect(booking, CalendarAction.CREATE),
        ]
        return BookingResult(booking=booking, side_effects=effects)

    # Confirm

    @BaseService.measure_operation("confirm_booking")
    def confirm_booking(
        self,
        booking_id: str,
        *,
        payment_intent_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ) -> BookingResult:
        """
        Mark a paid booking confirmed after the payment succeeded.

        Webhook delivery is at-least-once, so confirming a confirmed booking
        is a no-op. The purchase is recorded and the coach credited exactly once.
        """
        with self.transaction():
            booking = self._get_booking(booking_id, for_update=True)

            if booking.booking_status == BookingStatus.CONFIRMED:
                self.logger.info(
                    "Booking already confirmed", extra={"booking_id": booking_id}
                )
                return BookingResult(
                    booking=booking,
                    purchase=self.purchase_repository.get_for_booking(booking.id),
                    already_processed=True,
                )
            self._ensure_transition(booking, "confirm", frozenset({BookingStatus.REQUESTED}))

            if amount_cents is not None and amount_cents != booking.price_cents:
                self.logger.warning(
                    "Paid amount differs from booking price",
                    extra={
                        "booking_id": booking_id,
                        "amount_cents": amount_cents,
                        "price_cents": booking.price_cents,
                    },
                )

            now = self.now()
            booking.status = BookingStatus.CONFIRMED.value
            booking.confirmed_at = now
            if payment_intent_id:
                booking.payment_intent_id = payment_intent_id
            if checkout_session_id and not booking.stripe_checkout_session_id:
                booking.stripe_checkout_session_id = checkout_session_id

            purchase = None
            if not booking.is_free_intro:
                recorded = self.purchase_service.record_payment(
                    user_id=booking.student_id,
                    coach_id=booking.coach_id,
                    booking_id=booking.id,
                    amount_cents=booking.price_cents,
                    checkout_session_id=checkout_session_id or booking.stripe_checkout_session_id,
                    payment_intent_id=payment_intent_id,
                    currency=booking.currency,
                )
                purchase = recorded.purchase

        prometheus_metrics.record_booking_transition("confirm")
        self.log_operation("confirm_booking", booking_id=booking.id, payment_intent_id=payment_intent_id)
        effects = [
            self._mirror(booking, "scheduling_confirm", lambda c, ext: c.confirm_booking(ext)),
            self._calendar_effect(booking, CalendarAction.CREATE),
        ]
        return BookingResult(booking=booking, side_effects=effects, purchase=purchase)

    # Reschedule

    @BaseService.measure_operation("reschedule_booking")
    def reschedule_booking(
        self,
        booking_id: str,
        *,
        new_start: datetime,
        offering_id: Optional[str] = None,
        session_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> BookingResult:
        """
        Move a live booking to a new start, optionally onto another offering.

        A price decrease on a paid, confirmed booking refunds the difference.
        A price increase is only reported in ``price_delta_cents``; collecting
        it is left to the caller.
        """
        booking = self._get_booking(booking_id)
        self._ensure_transition(
            booking, "reschedule", frozenset({BookingStatus.REQUESTED, BookingStatus.CONFIRMED})
        )
        coach = self._get_coach(booking.coach_id)

        if booking.is_free_intro:
            resolved = ResolvedOffering(None, booking.session_minutes, 0, booking.buffer_minutes or 0)
        elif offering_id or (session_minutes and session_minutes != booking.session_minutes):
            resolved = self._resolve_offering(
                coach, offering_id=offering_id, session_minutes=session_minutes
            )
        else:
            resolved = ResolvedOffering(
                booking.offering_id,
                booking.session_minutes,
                booking.price_cents,
                booking.buffer_minutes or 0,
            )

        start = ensure_utc(new_start)
        end = start + timedelta(minutes=resolved.minutes)

        with self.slot_lock(booking.coach_id):
            with self.transaction():
                booking = self._get_booking(booking_id, for_update=True)
                self._ensure_transition(
                    booking,
                    "reschedule",
                    frozenset({BookingStatus.REQUESTED, BookingStatus.CONFIRMED}),
                )
                self.availability.ensure_slot_available(
                    booking.coach_id,
                    start,
                    end,
                    resolved.buffer_minutes,
                    exclude_booking_id=booking.id,
                )
                old_price = booking.price_cents
                if booking.original_scheduled_start is None:
                    booking.original_scheduled_start = booking.scheduled_start
                booking.scheduled_start = start
                booking.scheduled_end = end
                booking.session_minutes = resolved.minutes
                booking.offering_id = resolved.offering_id
                booking.price_cents = resolved.price_cents
                booking.buffer_minutes = resolved.buffer_minutes
                booking.reschedule_reason = reason
                booking.rescheduled_at = self.now()
                booking.reschedule_count = (booking.reschedule_count or 0) + 1
                was_confirmed = booking.booking_status == BookingStatus.CONFIRMED
                reschedule_count = booking.reschedule_count

        delta = resolved.price_cents - old_price
        refund: Optional[RefundOutcome] = None
        if delta < 0 and was_confirmed:
            refund = self._refund_service().refund_booking(
                booking.id,
                -delta,
                "Price difference refund after reschedule",
                idempotency_key=f"refund:{booking.id}:reschedule:{reschedule_count}",
            )

        prometheus_metrics.record_booking_transition("reschedule")
        self.log_operation(
            "reschedule_booking",
            booking_id=booking.id,
            price_delta_cents=delta,
            reschedule_count=reschedule_count,
        )
        effects = [
            self._mirror(
                booking,
                "scheduling_reschedule",
                lambda c, ext: c.reschedule_booking(ext, start=start, end=end),
            ),
            self._calendar_effect(booking, CalendarAction.UPDATE),
        ]
        return BookingResult(
            booking=booking, side_effects=effects, refund=refund, price_delta_cents=delta
        )

    # Complete

    @BaseService.measure_operation("complete_booking")
    def complete_booking(self, booking_id: str) -> BookingResult:
        with self.transaction():
            booking = self._get_booking(booking_id, for_update=True)
            self._ensure_transition(booking, "complete", frozenset({BookingStatus.CONFIRMED}))
            now = self.now()
            if booking.start_utc > now:
                raise ValidationException(
                    "Cannot complete a session before it has started",
                    details={"booking_id": booking_id},
                )
            booking.status = BookingStatus.COMPLETED.value
            booking.completed_at = now

        prometheus_metrics.record_booking_transition("complete")
        self.log_operation("complete_booking", booking_id=booking.id)
        return BookingResult(booking=booking)

    # Cancel

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        *,
        cancelled_by: CancelledBy = CancelledBy.STUDENT,
        reason: Optional[str] = None,
    ) -> BookingResult:
        """
        Cancel a booking, refunding per the cancellation policy.

        A refund failure never blocks the cancellation: the booking is still
        cancelled and the failure is returned in ``result.refund`` with the
        error kept on the booking for an operator to retry.
        """
        live = frozenset({BookingStatus.REQUESTED, BookingStatus.CONFIRMED})

        # Phase 1: validate and quote
        with self.transaction():
            booking = self._get_booking(booking_id)
            self._ensure_transition(booking, "cancel", live)
            cancelled_at = self.now()
            refund_context = self._build_refund_context(booking, cancelled_at)

        # Phase 2: processor call, no transaction held
        if refund_context["needs_refund"]:
            outcome = self._refund_service().execute_refund(
                booking_id=booking_id,
                coach_id=refund_context["coach_id"],
                payment_intent_id=refund_context["payment_intent_id"],
                amount_cents=refund_context["amount_cents"],
                reason=refund_context["reason"],
                idempotency_key=f"refund:{booking_id}:cancel",
            )
        else:
            outcome = RefundOutcome.skip(refund_context["reason"])

        # Phase 3: record
        with self.transaction():
            booking = self._get_booking(booking_id, for_update=True)
            self._ensure_transition(booking, "cancel", live)
            if not outcome.skipped:
                purchase = (
                    self.purchase_repository.get_by_id(refund_context["purchase_id"], for_update=True)
                    if refund_context["purchase_id"]
                    else None
                )
                outcome = self._refund_service().record_refund(
                    booking,
                    purchase,
                    outcome,
                    on_booking=True,
                    refunded_before_cents=refund_context["refunded_before_cents"],
                )
            booking.status = BookingStatus.CANCELLED.value
            booking.cancelled_at = cancelled_at
            booking.cancelled_by = cancelled_by.value
            booking.cancellation_reason = reason

        prometheus_metrics.record_booking_transition("cancel")
        self.log_operation(
            "cancel_booking",
            booking_id=booking.id,
            refund_cents=outcome.amount_cents,
            refund_ok=outcome.ok,
        )
        if not outcome.ok:
            self.logger.warning(
                "Booking cancelled with refund outstanding",
                extra={"booking_id": booking.id, "error": outcome.error},
            )
        effects = [
            self._mirror(
                booking,
                "scheduling_cancel",
                lambda c, ext: c.cancel_booking(ext, reason or "Cancelled"),
            ),
            self._calendar_effect(booking, CalendarAction.DELETE),
        ]
        return BookingResult(booking=booking, side_effects=effects, refund=outcome)

    def _build_refund_context(self, booking: Booking, cancelled_at: datetime) -> Dict[str, Any]:
        """Everything phase 2 needs, so no ORM object is held across the processor call."""
        context: Dict[str, Any] = {
            "coach_id": booking.coach_id,
            "needs_refund": False,
            "payment_intent_id": None,
            "purchase_id": None,
            "refunded_before_cents": None,
            "amount_cents": 0,
        }
        if booking.booking_status != BookingStatus.CONFIRMED or booking.is_free_intro:
            if booking.is_free_intro:
                context["reason"] = "No refund - free session"
            else:
                context["reason"] = "No refund - booking was never paid"
            return context

        refunds = self._refund_service()
        quote = refunds.quote(booking, cancelled_at)
        context["reason"] = quote.reason
        if not quote.is_refundable:
            return context

        reference, purchase = refunds.resolve_payment(booking)
        amount = quote.amount_cents
        if purchase is not None:
            # A reschedule refund may already have returned part of the payment
            amount = min(amount, purchase.remaining_refundable_cents)
        context.update(
            needs_refund=amount > 0,
            payment_intent_id=reference,
            purchase_id=purchase.id if purchase else None,
            refunded_before_cents=(purchase.refunded_amount_cents or 0) if purchase else None,
            amount_cents=amount,
        )
        return context

    # Queries

    def get_booking(self, booking_id: str) -> Booking:
        return self._get_booking(booking_id)

    def get_available_slots(
        self,
        coach_id: str,
        on_date: date,
        *,
        slot_minutes: int = DEFAULT_SLOT_MINUTES,
        viewer_time_zone: Optional[str] = None,
    ) -> AvailableSlots:
        return self.availability.get_available_slots(
            coach_id, on_date, slot_minutes=slot_minutes, viewer_time_zone=viewer_time_zone
        )
