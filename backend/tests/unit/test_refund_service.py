"""Unit tests for RefundService."""

from datetime import datetime, timezone

import pytest

from coachline.core.exceptions import ConsistencyException, NotFoundException, ValidationException
from coachline.models.payment import Purchase
from coachline.services.refund_service import RefundOutcome, RefundService

START = datetime(2030, 1, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def refund_service(db, processor, clock):
    return RefundService(db, processor, clock=clock)


class TestExecuteRefund:
    def _execute(self, service, **overrides):
        params = dict(
            booking_id="b1",
            coach_id="c1",
            payment_intent_id="pi_1",
            amount_cents=2500,
            reason="Partial refund",
            idempotency_key="refund:b1:cancel",
        )
        params.update(overrides)
        return service.execute_refund(**params)

    def test_zero_amount_is_skipped(self, refund_service, processor):
        outcome = self._execute(refund_service, amount_cents=0)
        assert outcome.ok and outcome.skipped
        assert processor.refunds == []

    def test_missing_payment_reference(self, refund_service):
        outcome = self._execute(refund_service, payment_intent_id=None)
        assert not outcome.ok
        assert outcome.error == "No payment found for this booking"

    def test_payment_not_succeeded(self, refund_service, processor):
        processor.register_payment("pi_1", status="requires_payment_method")
        outcome = self._execute(refund_service)
        assert outcome.error == "Payment not completed (status: requires_payment_method)"

    def test_processor_failure_is_returned_not_raised(self, refund_service, processor):
        processor.register_payment("pi_1")
        processor.fail_on.add("refund")
        outcome = self._execute(refund_service)
        assert not outcome.ok
        assert outcome.amount_cents == 2500
        assert outcome.error == "Simulated refund failure"

    def test_success_carries_metadata(self, refund_service, processor):
        processor.register_payment("pi_1", charge_id="ch_1")
        outcome = self._execute(refund_service)
        assert outcome.ok
        assert outcome.refund_id.startswith("re_fake_")
        (refund,) = processor.refunds
        assert refund["charge_id"] == "ch_1"
        assert refund["amount_cents"] == 2500
        assert refund["reason"] == "requested_by_customer"
        assert refund["metadata"] == {
            "booking_id": "b1",
            "coach_id": "c1",
            "refund_reason": "Partial refund",
        }

    def test_payload(self):
        assert RefundOutcome.failed(100, "r", "boom").to_payload() == {
            "ok": False,
            "amount_cents": 100,
            "reason": "r",
            "refund_id": None,
            "error": "boom",
            "skipped": False,
        }


class TestRefundBooking:
    def test_partial_refund_reverses_proportional_earnings(
        self, db, coach, refund_service, confirmed_booking_factory, pending_balance
    ):
        result = confirmed_booking_factory(coach, START)
        assert pending_balance(coach.id) == 8000

        outcome = refund_service.refund_booking(result.booking.id, 3000, "Goodwill")

        assert outcome.ok
        assert outcome.pending_reversed_cents == 2400
        assert pending_balance(coach.id) == 5600
        purchase = db.query(Purchase).filter_by(booking_id=result.booking.id).one()
        assert purchase.refunded_amount_cents == 3000
        assert purchase.status == "paid"
        # Not a cancellation refund
        assert result.booking.refund_id is None

    def test_refunding_the_rest_marks_purchase_refunded(
        self, db, coach, refund_service, confirmed_booking_factory, pending_balance
    ):
        result = confirmed_booking_factory(coach, START)
        refund_service.refund_booking(result.booking.id, 3000, "First")
        refund_service.refund_booking(result.booking.id, 7000, "Rest")

        purchase = db.query(Purchase).filter_by(booking_id=result.booking.id).one()
        assert purchase.status == "refunded"
        assert purchase.reversed_earnings_cents == 8000
        assert pending_balance(coach.id) == 0

    def test_exceeding_remaining_fails_before_processor_call(
        self, coach, refund_service, processor, confirmed_booking_factory, pending_balance
    ):
        result = confirmed_booking_factory(coach, START)
        with pytest.raises(ConsistencyException) as excinfo:
            refund_service.refund_booking(result.booking.id, 10_001, "Too much")
        assert excinfo.value.code == "REFUND_EXCEEDS_REMAINING"
        assert processor.refunds == []
        assert pending_balance(coach.id) == 8000

    def test_processor_failure_leaves_balances(
        self, coach, refund_service, processor, confirmed_booking_factory, pending_balance
    ):
        result = confirmed_booking_factory(coach, START)
        processor.fail_on.add("refund")
        outcome = refund_service.refund_booking(result.booking.id, 3000, "Goodwill")
        assert not outcome.ok
        assert pending_balance(coach.id) == 8000

    def test_requires_positive_amount(self, refund_service):
        with pytest.raises(ValidationException):
            refund_service.refund_booking("missing", 0, "Nothing")

    def test_unknown_booking(self, refund_service):
        with pytest.raises(NotFoundException):
            refund_service.refund_booking("01HZZZZZZZZZZZZZZZZZZZZZZZ", 100, "Nothing")

    def test_requested_booking_cannot_be_refunded(self, coach, refund_service, booking_service):
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        with pytest.raises(ValidationException):
            refund_service.refund_booking(created.booking.id, 100, "Nothing")


class TestPolicyResolution:
    def test_coach_policy_applies(self, coach_factory, refund_service, confirmed_booking_factory, clock):
        strict = coach_factory(
            cancellation_policy={"full_refund_hours": 72, "partial_refund_hours": 24, "partial_refund_percent": 25}
        )
        result = confirmed_booking_factory(strict, START)
        # 70 hours before start
        quote = refund_service.quote(result.booking, clock())
        assert quote.band == "partial"
        assert quote.amount_cents == 2500

    def test_booking_policy_overrides_coach(self, db, coach, refund_service, confirmed_booking_factory, clock):
        result = confirmed_booking_factory(coach, START)
        result.booking.cancellation_policy = {"full_refund_hours": 100, "partial_refund_hours": 80}
        db.commit()
        quote = refund_service.quote(result.booking, clock())
        assert quote.band == "none"
        assert quote.amount_cents == 0

    def test_defaults(self, coach, refund_service, confirmed_booking_factory, clock):
        result = confirmed_booking_factory(coach, START)
        assert refund_service.quote(result.booking, clock()).band == "full"
