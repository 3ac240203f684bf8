"""
End-to-end booking lifecycle against a real (SQLite) database.

Covers checkout confirmation, cancellation refunds and their effect on the
coach's pending balance, reschedules, free intros and the slot race.
"""

from datetime import datetime, timedelta, timezone
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from coachline.core.booking_lock import local_slot_lock
from coachline.core.enums import BookingStatus, CancelledBy
from coachline.core.exceptions import (
    ConsistencyException,
    DuplicateFreeIntroException,
    ExternalServiceException,
    InvalidTransitionException,
    NotFoundException,
    SlotUnavailableException,
    ValidationException,
)
from coachline.database import Base, init_db
from coachline.integrations.calcom_client import FakeCalComClient
from coachline.integrations.calendar_sync_client import FakeCalendarSyncClient
from coachline.integrations.payment_processor import FakePaymentProcessor
from coachline.models.coach import Coach, CoachOffering
from coachline.models.payment import Purchase
from coachline.services.booking_service import BookingService
from coachline.services.stripe_webhook_service import StripeWebhookService

START = datetime(2030, 1, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def fifty_dollar_coach(coach_factory):
    return coach_factory(price_cents=5000)


class TestPaidSessionLifecycle:
    def test_create_opens_checkout_in_requested(self, fifty_dollar_coach, booking_service, processor):
        result = booking_service.create_booking(
            coach_id=fifty_dollar_coach.id,
            student_id="student-1",
            scheduled_start=START,
            session_minutes=60,
        )
        booking = result.booking
        assert booking.status == BookingStatus.REQUESTED.value
        assert booking.price_cents == 5000
        assert booking.scheduled_end == START + timedelta(hours=1)
        assert result.checkout_url == f"https://checkout.test/{booking.stripe_checkout_session_id}"

        (checkout,) = processor.checkouts
        assert checkout["amount_cents"] == 5000
        assert checkout["destination_account"] == fifty_dollar_coach.stripe_account_id
        assert checkout["metadata"]["booking_id"] == booking.id
        assert checkout["metadata"]["platform_fee_cents"] == "1000"

    def test_confirm_records_purchase_and_credits_coach(
        self, db, fifty_dollar_coach, confirmed_booking_factory, pending_balance
    ):
        result = confirmed_booking_factory(fifty_dollar_coach, START)

        assert result.booking.status == BookingStatus.CONFIRMED.value
        assert result.booking.confirmed_at is not None
        purchase = db.query(Purchase).one()
        assert (purchase.amount_cents, purchase.platform_fee_cents, purchase.coach_earnings_cents) == (
            5000,
            1000,
            4000,
        )
        assert pending_balance(fifty_dollar_coach.id) == 4000

    def test_confirm_is_idempotent(self, db, fifty_dollar_coach, booking_service, confirmed_booking_factory, pending_balance):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        again = booking_service.confirm_booking(
            result.booking.id,
            payment_intent_id=result.booking.payment_intent_id,
            checkout_session_id=result.booking.stripe_checkout_session_id,
        )
        assert again.already_processed
        assert again.purchase.id == result.purchase.id
        assert db.query(Purchase).count() == 1
        assert pending_balance(fifty_dollar_coach.id) == 4000

    def test_cancel_30_hours_before_refunds_in_full(
        self, fifty_dollar_coach, booking_service, confirmed_booking_factory, clock, processor, pending_balance
    ):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        clock.set(START - timedelta(hours=30))

        cancelled = booking_service.cancel_booking(result.booking.id, reason="Schedule change")

        assert cancelled.booking.status == BookingStatus.CANCELLED.value
        assert cancelled.booking.cancelled_by == CancelledBy.STUDENT.value
        assert cancelled.refund.amount_cents == 5000
        assert cancelled.booking.refund_amount_cents == 5000
        assert cancelled.booking.refund_id == processor.refunds[0]["id"]
        assert pending_balance(fifty_dollar_coach.id) == 0

    def test_cancel_5_hours_before_refunds_half(
        self, db, fifty_dollar_coach, booking_service, confirmed_booking_factory, clock, pending_balance
    ):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        clock.set(START - timedelta(hours=5))

        cancelled = booking_service.cancel_booking(result.booking.id)

        assert cancelled.refund.amount_cents == 2500
        assert cancelled.refund.reason.startswith("Partial refund")
        assert cancelled.refund.pending_reversed_cents == 2000
        assert pending_balance(fifty_dollar_coach.id) == 2000
        assert db.query(Purchase).one().refunded_amount_cents == 2500

    def test_cancel_1_hour_before_refunds_nothing(
        self, fifty_dollar_coach, booking_service, confirmed_booking_factory, clock, processor, pending_balance
    ):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        clock.set(START - timedelta(hours=1))

        cancelled = booking_service.cancel_booking(result.booking.id, cancelled_by=CancelledBy.COACH)

        assert cancelled.booking.status == BookingStatus.CANCELLED.value
        assert cancelled.booking.cancelled_by == "coach"
        assert cancelled.refund.amount_cents == 0
        assert cancelled.refund.skipped
        assert processor.refunds == []
        assert pending_balance(fifty_dollar_coach.id) == 4000

    def test_refund_failure_does_not_block_cancellation(
        self, fifty_dollar_coach, booking_service, confirmed_booking_factory, processor, pending_balance
    ):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        processor.fail_on.add("refund")

        cancelled = booking_service.cancel_booking(result.booking.id)

        assert cancelled.booking.status == BookingStatus.CANCELLED.value
        assert cancelled.error == "Simulated refund failure"
        assert cancelled.booking.refund_error == "Simulated refund failure"
        assert cancelled.booking.refund_outstanding
        assert pending_balance(fifty_dollar_coach.id) == 4000

    def test_refund_webhook_arriving_before_cancel_records(
        self,
        db,
        engine,
        fifty_dollar_coach,
        booking_service,
        confirmed_booking_factory,
        processor,
        clock,
        pending_balance,
        monkeypatch,
    ):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        payment_intent_id = result.booking.payment_intent_id
        clock.set(START - timedelta(hours=5))
        webhook_session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)()
        webhooks = StripeWebhookService(webhook_session, processor, clock=clock)
        charge_refunded = {
            "id": "evt_refund",
            "type": "charge.refunded",
            "data": {"object": {"payment_intent": payment_intent_id, "amount_refunded": 2500}},
        }
        create_refund = processor.create_refund

        def refund_then_webhook(*args, **kwargs):
            refund = create_refund(*args, **kwargs)
            webhooks.process_event(charge_refunded)
            return refund

        monkeypatch.setattr(processor, "create_refund", refund_then_webhook)
        try:
            cancelled = booking_service.cancel_booking(result.booking.id)
        finally:
            webhook_session.close()

        assert cancelled.booking.status == BookingStatus.CANCELLED.value
        assert cancelled.refund.ok
        assert cancelled.refund.amount_cents == 2500
        assert cancelled.refund.pending_reversed_cents == 0
        assert cancelled.booking.refund_amount_cents == 2500
        assert len(processor.refunds) == 1
        # Reversed once, by the webhook
        assert pending_balance(fifty_dollar_coach.id) == 2000
        purchase = db.query(Purchase).one()
        assert purchase.refunded_amount_cents == 2500
        assert purchase.reversed_earnings_cents == 2000

    def test_cancel_unpaid_request(self, fifty_dollar_coach, booking_service, processor):
        created = booking_service.create_booking(
            coach_id=fifty_dollar_coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        cancelled = booking_service.cancel_booking(created.booking.id)
        assert cancelled.booking.status == BookingStatus.CANCELLED.value
        assert cancelled.refund.reason == "No refund - booking was never paid"
        assert processor.refunds == []

    def test_complete_after_start(self, fifty_dollar_coach, booking_service, confirmed_booking_factory, clock):
        result = confirmed_booking_factory(fifty_dollar_coach, START)
        with pytest.raises(ValidationException):
            booking_service.complete_booking(result.booking.id)

        clock.set(START + timedelta(hours=1))
        completed = booking_service.complete_booking(result.booking.id)
        assert completed.booking.status == BookingStatus.COMPLETED.value
        assert completed.booking.completed_at == START + timedelta(hours=1)


class TestTerminalStates:
    def test_cancelled_is_terminal(self, coach, booking_service, confirmed_booking_factory):
        result = confirmed_booking_factory(coach, START)
        booking_service.cancel_booking(result.booking.id)
        assert result.booking.is_terminal

        with pytest.raises(InvalidTransitionException):
            booking_service.cancel_booking(result.booking.id)
        with pytest.raises(InvalidTransitionException):
            booking_service.complete_booking(result.booking.id)
        with pytest.raises(InvalidTransitionException):
            booking_service.reschedule_booking(result.booking.id, new_start=START + timedelta(days=1))
        with pytest.raises(InvalidTransitionException):
            booking_service.confirm_booking(result.booking.id)

    def test_completed_is_terminal(self, coach, booking_service, confirmed_booking_factory, clock):
        result = confirmed_booking_factory(coach, START)
        clock.set(START + timedelta(hours=2))
        completed = booking_service.complete_booking(result.booking.id)
        assert completed.booking.is_terminal
        with pytest.raises(InvalidTransitionException) as excinfo:
            booking_service.cancel_booking(result.booking.id)
        assert excinfo.value.message == "Cannot cancel a booking that is completed"

    def test_requested_cannot_complete(self, coach, booking_service):
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        with pytest.raises(InvalidTransitionException):
            booking_service.complete_booking(created.booking.id)

    def test_cancelled_booking_frees_the_slot(self, coach, booking_service, confirmed_booking_factory):
        result = confirmed_booking_factory(coach, START)
        booking_service.cancel_booking(result.booking.id)
        again = booking_service.create_booking(
            coach_id=coach.id, student_id="s2", scheduled_start=START, session_minutes=60
        )
        assert again.booking.status == BookingStatus.REQUESTED.value


class TestCreateValidation:
    def test_unknown_coach(self, booking_service):
        with pytest.raises(NotFoundException):
            booking_service.create_booking(
                coach_id="01HZZZZZZZZZZZZZZZZZZZZZZZ", student_id="s1", scheduled_start=START, session_minutes=60
            )

    def test_unknown_session_type(self, coach, booking_service):
        with pytest.raises(ValidationException) as excinfo:
            booking_service.create_booking(
                coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=45
            )
        assert excinfo.value.message == "Session type not available"

    def test_coach_without_payout_account(self, coach_factory, booking_service, processor):
        coach = coach_factory(with_account=False)
        with pytest.raises(ConsistencyException):
            booking_service.create_booking(
                coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
            )
        assert processor.checkouts == []

    def test_past_start(self, coach, booking_service, clock):
        with pytest.raises(SlotUnavailableException) as excinfo:
            booking_service.create_booking(
                coach_id=coach.id,
                student_id="s1",
                scheduled_start=clock() - timedelta(hours=1),
                session_minutes=60,
            )
        assert excinfo.value.message == "Cannot book in the past"

    def test_checkout_failure_rolls_back_the_booking(self, db, coach, booking_service, processor):
        processor.fail_on.add("checkout")
        with pytest.raises(ExternalServiceException):
            booking_service.create_booking(
                coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
            )
        processor.fail_on.clear()
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        assert created.booking.status == BookingStatus.REQUESTED.value

    def test_custom_offering_with_buffer(self, db, coach, booking_service):
        custom = CoachOffering(
            coach_id=coach.id,
            name="Video review",
            duration_minutes=30,
            price_cents=3500,
            buffer_minutes=15,
            is_custom=True,
        )
        db.add(custom)
        db.commit()
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, offering_id=custom.id
        )
        assert created.booking.session_minutes == 30
        assert created.booking.price_cents == 3500
        assert created.booking.buffer_minutes == 15

        with pytest.raises(SlotUnavailableException):
            booking_service.create_booking(
                coach_id=coach.id,
                student_id="s2",
                scheduled_start=START + timedelta(minutes=40),
                session_minutes=60,
            )


class TestBuffers:
    @pytest.fixture
    def buffered_coach(self, coach_factory):
        return coach_factory(duration_minutes=30, price_cents=3000, buffer_minutes=10)

    def test_touching_expanded_intervals_are_allowed(self, buffered_coach, booking_service):
        booking_service.create_booking(
            coach_id=buffered_coach.id, student_id="s1", scheduled_start=START, session_minutes=30
        )
        # 10:00-10:30 +10 ends 10:40; 10:50 -10 starts 10:40
        later = booking_service.create_booking(
            coach_id=buffered_coach.id,
            student_id="s2",
            scheduled_start=START + timedelta(minutes=50),
            session_minutes=30,
        )
        assert later.booking.status == BookingStatus.REQUESTED.value

    def test_overlapping_buffers_conflict(self, buffered_coach, booking_service):
        booking_service.create_booking(
            coach_id=buffered_coach.id, student_id="s1", scheduled_start=START, session_minutes=30
        )
        with pytest.raises(SlotUnavailableException):
            booking_service.create_booking(
                coach_id=buffered_coach.id,
                student_id="s2",
                scheduled_start=START + timedelta(minutes=45),
                session_minutes=30,
            )

    def test_concurrent_overlapping_requests_only_one_wins(self, tmp_path, clock):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False}, future=True
        )
        init_db(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
        processor = FakePaymentProcessor()

        setup = factory()
        coach = Coach(display_name="Race", timezone="UTC", stripe_account_id="acct_race", stripe_connect_status="active")
        setup.add(coach)
        setup.flush()
        setup.add(
            CoachOffering(coach_id=coach.id, name="30", duration_minutes=30, price_cents=3000, buffer_minutes=10)
        )
        setup.commit()
        coach_id = coach.id
        setup.close()

        barrier = threading.Barrier(2)
        outcomes = []
        sessions = []

        def attempt(start):
            session = factory()
            sessions.append(session)
            service = BookingService(
                session, payment_processor=processor, clock=clock, slot_lock=local_slot_lock
            )
            barrier.wait()
            try:
                service.create_booking(
                    coach_id=coach_id, student_id=f"s-{start:%H%M}", scheduled_start=start, session_minutes=30
                )
                outcomes.append("ok")
            except SlotUnavailableException:
                outcomes.append("unavailable")

        threads = [
            threading.Thread(target=attempt, args=(START,)),
            threading.Thread(target=attempt, args=(START + timedelta(minutes=20),)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        for session in sessions:
            session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()

        assert sorted(outcomes) == ["ok", "unavailable"]
        assert len(processor.checkouts) == 1


class TestReschedule:
    def test_keeps_first_original_start(self, coach, booking_service, confirmed_booking_factory):
        result = confirmed_booking_factory(coach, START)
        first = booking_service.reschedule_booking(
            result.booking.id, new_start=START + timedelta(hours=2), reason="Traffic"
        )
        second = booking_service.reschedule_booking(result.booking.id, new_start=START + timedelta(days=1))

        booking = second.booking
        assert first.price_delta_cents == 0
        assert booking.original_scheduled_start.replace(tzinfo=timezone.utc) == START
        assert booking.reschedule_count == 2
        assert booking.start_utc == START + timedelta(days=1)
        assert booking.status == BookingStatus.CONFIRMED.value

    def test_can_move_within_own_buffer(self, coach, booking_service, confirmed_booking_factory):
        result = confirmed_booking_factory(coach, START)
        moved = booking_service.reschedule_booking(result.booking.id, new_start=START + timedelta(minutes=30))
        assert moved.booking.start_utc == START + timedelta(minutes=30)

    def test_conflict_with_other_booking(self, coach, booking_service, confirmed_booking_factory):
        first = confirmed_booking_factory(coach, START)
        confirmed_booking_factory(coach, START + timedelta(hours=3), student_id="student-2")
        with pytest.raises(SlotUnavailableException):
            booking_service.reschedule_booking(first.booking.id, new_start=START + timedelta(hours=3, minutes=30))

    def test_cheaper_offering_refunds_difference(
        self, db, coach, booking_service, confirmed_booking_factory, processor, pending_balance
    ):
        db.add(CoachOffering(coach_id=coach.id, name="30-minute", duration_minutes=30, price_cents=6000))
        db.commit()
        result = confirmed_booking_factory(coach, START)
        assert pending_balance(coach.id) == 8000

        moved = booking_service.reschedule_booking(
            result.booking.id, new_start=START + timedelta(days=1), session_minutes=30
        )

        assert moved.price_delta_cents == -4000
        assert moved.refund.ok
        assert moved.refund.amount_cents == 4000
        assert moved.booking.price_cents == 6000
        assert moved.booking.refund_id is None
        assert pending_balance(coach.id) == 4800

        # A later full cancellation refunds only what is left
        cancelled = booking_service.cancel_booking(result.booking.id)
        assert cancelled.refund.amount_cents == 6000
        assert [r["amount_cents"] for r in processor.refunds] == [4000, 6000]
        assert pending_balance(coach.id) == 0

    def test_more_expensive_offering_reports_delta(self, db, coach, booking_service, confirmed_booking_factory, processor):
        db.add(CoachOffering(coach_id=coach.id, name="90-minute", duration_minutes=90, price_cents=14000))
        db.commit()
        result = confirmed_booking_factory(coach, START)
        moved = booking_service.reschedule_booking(result.booking.id, new_start=START, session_minutes=90)
        assert moved.price_delta_cents == 4000
        assert moved.refund is None
        assert processor.refunds == []


class TestFreeIntro:
    @pytest.fixture
    def intro_coach(self, coach_factory):
        return coach_factory(free_intro_minutes=15)

    def test_created_confirmed_and_free(self, db, intro_coach, booking_service, processor):
        result = booking_service.create_free_intro(
            coach_id=intro_coach.id, student_id="s1", scheduled_start=START
        )
        assert result.booking.status == BookingStatus.CONFIRMED.value
        assert result.booking.price_cents == 0
        assert result.booking.session_minutes == 15
        assert processor.checkouts == []
        assert db.query(Purchase).count() == 0

    def test_one_per_student_and_coach_in_window(self, intro_coach, coach_factory, booking_service, clock):
        first = booking_service.create_free_intro(coach_id=intro_coach.id, student_id="s1", scheduled_start=START)
        booking_service.cancel_booking(first.booking.id)

        # Cancelled intros still count
        with pytest.raises(DuplicateFreeIntroException):
            booking_service.create_free_intro(
                coach_id=intro_coach.id, student_id="s1", scheduled_start=START + timedelta(days=1)
            )

        other = coach_factory(free_intro_minutes=15)
        booking_service.create_free_intro(coach_id=other.id, student_id="s1", scheduled_start=START)

        clock.advance(days=31)
        again = booking_service.create_free_intro(
            coach_id=intro_coach.id, student_id="s1", scheduled_start=clock() + timedelta(days=1)
        )
        assert again.booking.status == BookingStatus.CONFIRMED.value

    def test_disabled(self, coach, booking_service):
        with pytest.raises(ValidationException) as excinfo:
            booking_service.create_free_intro(coach_id=coach.id, student_id="s1", scheduled_start=START)
        assert excinfo.value.message == "Free intro not available for this coach"

    def test_enabled_without_duration(self, db, coach, booking_service):
        coach.free_intro_enabled = True
        db.commit()
        with pytest.raises(ConsistencyException):
            booking_service.create_free_intro(coach_id=coach.id, student_id="s1", scheduled_start=START)

    def test_cancel_has_no_refund(self, intro_coach, booking_service, processor):
        result = booking_service.create_free_intro(coach_id=intro_coach.id, student_id="s1", scheduled_start=START)
        cancelled = booking_service.cancel_booking(result.booking.id)
        assert cancelled.refund.reason == "No refund - free session"
        assert processor.refunds == []


class TestSideEffects:
    @pytest.fixture
    def mirrored(self, db, coach_factory, processor, clock):
        coach = coach_factory(calcom_event_type_id=7)
        calcom = FakeCalComClient()
        calendar = FakeCalendarSyncClient()
        service = BookingService(
            db,
            payment_processor=processor,
            calcom_client=calcom,
            calendar_client=calendar,
            clock=clock,
            slot_lock=local_slot_lock,
        )
        return coach, service, calcom, calendar

    def test_lifecycle_is_mirrored(self, mirrored, processor):
        coach, service, calcom, calendar = mirrored
        created = service.create_booking(
            coach_id=coach.id,
            student_id="s1",
            scheduled_start=START,
            session_minutes=60,
            student_email="sam@example.com",
        )
        booking = created.booking
        assert booking.external_booking_id.startswith("cal_fake_")

        processor.register_payment("pi_mirror")
        confirmed = service.confirm_booking(booking.id, payment_intent_id="pi_mirror")
        assert [e.name for e in confirmed.side_effects] == ["scheduling_confirm", "calendar_create"]
        assert all(e.ok for e in confirmed.side_effects)

        service.cancel_booking(booking.id, reason="Sick")
        assert [call for call, _ in calcom.calls] == [
            "POST /bookings",
            f"POST /bookings/{booking.external_booking_id}/confirm",
            f"DELETE /bookings/{booking.external_booking_id}",
        ]
        assert calendar.events == [(booking.id, "create"), (booking.id, "delete")]

    def test_without_email_the_mirror_is_skipped(self, mirrored):
        coach, service, calcom, _ = mirrored
        created = service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        (effect,) = created.side_effects
        assert effect.skipped
        assert calcom.calls == []

    def test_failures_are_reported_not_raised(self, db, coach_factory, processor, clock):
        coach = coach_factory(free_intro_minutes=20, calcom_event_type_id=7)
        service = BookingService(
            db,
            payment_processor=processor,
            calcom_client=FakeCalComClient(fail=True),
            calendar_client=FakeCalendarSyncClient(fail=True),
            clock=clock,
            slot_lock=local_slot_lock,
        )
        result = service.create_free_intro(
            coach_id=coach.id, student_id="s1", scheduled_start=START, student_email="sam@example.com"
        )
        assert result.booking.status == BookingStatus.CONFIRMED.value
        assert result.booking.external_booking_id is None
        assert [e.ok for e in result.side_effects] == [False, False]
        assert result.error == "Simulated Cal.com outage"


class TestAvailableSlots:
    def test_confirmed_booking_is_hidden(self, coach, booking_service, confirmed_booking_factory):
        confirmed_booking_factory(coach, START)
        slots = booking_service.get_available_slots(coach.id, START.date(), slot_minutes=60).slots
        assert "10:00" not in slots
        assert "09:00" in slots and "11:00" in slots
