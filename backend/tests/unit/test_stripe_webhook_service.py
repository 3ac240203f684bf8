"""Unit tests for Stripe webhook processing."""

from datetime import datetime, timezone
import json

import pytest

from coachline.core.enums import BookingStatus, StripeConnectStatus
from coachline.core.exceptions import ValidationException
from coachline.models.payment import Dispute, Payout, Purchase
from coachline.services.stripe_webhook_service import StripeWebhookService, account_status

START = datetime(2030, 1, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def webhook_service(db, processor, booking_service, clock):
    return StripeWebhookService(db, processor, booking_service=booking_service, clock=clock)


def event(event_type: str, obj: dict) -> dict:
    return {"id": f"evt_{event_type}", "type": event_type, "data": {"object": obj}}


def checkout_event(booking, payment_intent_id: str = "pi_hook_1") -> dict:
    return event(
        "checkout.session.completed",
        {
            "id": booking.stripe_checkout_session_id,
            "payment_status": "paid",
            "payment_intent": payment_intent_id,
            "amount_total": booking.price_cents,
            "metadata": {"type": "session", "booking_id": booking.id},
        },
    )


class TestDispatch:
    def test_unknown_event_is_acknowledged(self, webhook_service):
        assert webhook_service.process_event(event("customer.created", {})) == {
            "received": True,
            "handled": False,
        }

    def test_signature_is_verified(self, webhook_service):
        with pytest.raises(ValidationException):
            webhook_service.verify_and_process(b"{}", "bad-signature")

    def test_verified_payload_is_processed(self, webhook_service):
        payload = json.dumps(event("customer.created", {})).encode()
        assert webhook_service.verify_and_process(payload, "fake-signature")["received"] is True


class TestCheckoutCompleted:
    def test_confirms_and_credits_once(self, db, coach, booking_service, webhook_service, pending_balance):
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        hook = checkout_event(created.booking)

        first = webhook_service.process_event(hook)
        second = webhook_service.process_event(hook)

        assert first["handled"] is True
        assert first["already_processed"] is False
        assert second["already_processed"] is True
        assert first["purchase_id"] == second["purchase_id"]
        assert db.query(Purchase).count() == 1
        assert pending_balance(coach.id) == 8000
        assert created.booking.status == BookingStatus.CONFIRMED.value
        assert created.booking.payment_intent_id == "pi_hook_1"

    def test_unpaid_session_is_skipped(self, coach, booking_service, webhook_service):
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        hook = checkout_event(created.booking)
        hook["data"]["object"]["payment_status"] = "unpaid"
        assert webhook_service.process_event(hook)["skipped"] == "payment not completed"
        assert created.booking.status == BookingStatus.REQUESTED.value

    def test_payment_for_cancelled_booking_is_reported(self, coach, booking_service, webhook_service):
        created = booking_service.create_booking(
            coach_id=coach.id, student_id="s1", scheduled_start=START, session_minutes=60
        )
        booking_service.cancel_booking(created.booking.id)
        result = webhook_service.process_event(checkout_event(created.booking))
        assert result["error"] == "Cannot confirm a booking that is cancelled"

    def test_course_purchase(self, db, coach, webhook_service, pending_balance):
        hook = event(
            "checkout.session.completed",
            {
                "id": "cs_course_1",
                "payment_status": "paid",
                "payment_intent": "pi_course_1",
                "amount_total": 5000,
                "currency": "usd",
                "metadata": {"type": "course", "coach_id": coach.id, "course_id": "course-9", "student_id": "s1"},
            },
        )
        first = webhook_service.process_event(hook)
        second = webhook_service.process_event(hook)

        assert first["created"] is True
        assert second["created"] is False
        purchase = db.query(Purchase).one()
        assert purchase.type == "course"
        assert purchase.platform_fee_cents == 1000
        assert pending_balance(coach.id) == 4000


class TestChargeRefunded:
    def test_applies_only_the_new_delta(self, db, coach, webhook_service, confirmed_booking_factory, pending_balance):
        result = confirmed_booking_factory(coach, START)
        pi = result.booking.payment_intent_id
        refund = event("charge.refunded", {"payment_intent": pi, "amount_refunded": 2500})

        first = webhook_service.process_event(refund)
        again = webhook_service.process_event(refund)

        assert first["refunded_cents"] == 2500
        assert first["reversed_cents"] == 2000
        assert again["already_processed"] is True
        assert pending_balance(coach.id) == 6000

        more = event("charge.refunded", {"payment_intent": pi, "amount_refunded": 10_000})
        assert webhook_service.process_event(more)["refunded_cents"] == 7500
        assert pending_balance(coach.id) == 0
        assert db.query(Purchase).one().status == "refunded"

    def test_unknown_purchase(self, webhook_service):
        hook = event("charge.refunded", {"payment_intent": "pi_unknown", "amount_refunded": 100})
        assert webhook_service.process_event(hook)["skipped"] == "unknown purchase"


class TestDisputes:
    def _dispute(self, pi: str, status: str) -> dict:
        return event(
            "charge.dispute.updated",
            {
                "id": "dp_1",
                "payment_intent": pi,
                "charge": "ch_1",
                "amount": 10_000,
                "reason": "fraudulent",
                "status": status,
                "evidence_details": {"due_by": 1894608000},
            },
        )

    def test_lost_dispute_reverses_earnings_once(self, db, coach, webhook_service, confirmed_booking_factory, pending_balance):
        result = confirmed_booking_factory(coach, START)
        pi = result.booking.payment_intent_id

        opened = webhook_service.process_event(self._dispute(pi, "needs_response"))
        assert opened["reversed_cents"] == 0
        assert pending_balance(coach.id) == 8000

        lost = webhook_service.process_event(self._dispute(pi, "lost"))
        assert lost["reversed_cents"] == 8000
        assert pending_balance(coach.id) == 0

        again = webhook_service.process_event(self._dispute(pi, "lost"))
        assert again["reversed_cents"] == 0

        dispute = db.query(Dispute).one()
        assert dispute.coach_id == coach.id
        assert dispute.earnings_reversed is True
        assert dispute.status == "lost"
        assert dispute.evidence_due_by is not None

    def test_won_dispute_keeps_earnings(self, coach, webhook_service, confirmed_booking_factory, pending_balance):
        result = confirmed_booking_factory(coach, START)
        webhook_service.process_event(self._dispute(result.booking.payment_intent_id, "won"))
        assert pending_balance(coach.id) == 8000


class TestTransferUpdated:
    def test_failure_and_payment(self, db, coach, webhook_service, confirmed_booking_factory, pending_balance):
        confirmed_booking_factory(coach, START)
        report = webhook_service.payout_service.run_weekly_payout()
        transfer_id = report.payouts[0].transfer_id

        paid = webhook_service.process_event(event("transfer.updated", {"id": transfer_id, "status": "paid"}))
        assert paid["status"] == "paid"

        failed = webhook_service.process_event(
            event("transfer.updated", {"id": transfer_id, "reversed": True})
        )
        assert failed["status"] == "failed"
        assert pending_balance(coach.id) == 8000
        assert db.query(Payout).one().failure_reason == "Transfer reversed"

    def test_unknown_transfer(self, webhook_service):
        result = webhook_service.process_event(event("transfer.updated", {"id": "tr_missing", "status": "paid"}))
        assert result["skipped"] == "unknown transfer"


class TestAccountUpdated:
    @pytest.mark.parametrize(
        "flags, expected",
        [
            ({"charges_enabled": True, "payouts_enabled": True, "details_submitted": True}, StripeConnectStatus.ACTIVE),
            ({"charges_enabled": True, "payouts_enabled": False}, StripeConnectStatus.RESTRICTED),
            ({"details_submitted": False}, StripeConnectStatus.PENDING),
        ],
    )
    def test_account_status(self, flags, expected):
        assert account_status(flags) == expected

    def test_updates_coach_by_account_id(self, db, coach, webhook_service):
        result = webhook_service.process_event(
            event("account.updated", {"id": coach.stripe_account_id, "charges_enabled": False})
        )
        assert result["stripe_connect_status"] == "restricted"
        db.refresh(coach)
        assert coach.stripe_connect_status == StripeConnectStatus.RESTRICTED.value

    def test_links_account_by_metadata(self, db, coach_factory, webhook_service):
        coach = coach_factory(with_account=False)
        webhook_service.process_event(
            event(
                "account.updated",
                {
                    "id": "acct_new",
                    "metadata": {"coach_id": coach.id},
                    "charges_enabled": True,
                    "payouts_enabled": True,
                    "details_submitted": True,
                },
            )
        )
        db.refresh(coach)
        assert coach.stripe_account_id == "acct_new"
        assert coach.stripe_connect_status == "active"

    def test_unknown_account(self, webhook_service):
        result = webhook_service.process_event(event("account.updated", {"id": "acct_nobody"}))
        assert result["skipped"] == "unknown account"
