"""HTTP surface: request validation, the problem-details envelope and auth guards."""

from datetime import datetime, timedelta, timezone
import json

from fastapi.testclient import TestClient
import pytest

from coachline.api.dependencies import (
    get_booking_service,
    get_db,
    get_payment_processor,
    get_payout_service,
    get_risk_scoring_service,
    get_slot_availability_service,
    get_stripe_webhook_service,
)
from coachline.core.booking_lock import local_slot_lock
from coachline.main import create_app
from coachline.services.booking_service import BookingService
from coachline.services.payout_service import PayoutService
from coachline.services.risk_scoring import RiskScoringService
from coachline.services.slot_availability import SlotAvailabilityService
from coachline.services.stripe_webhook_service import StripeWebhookService

START = datetime(2030, 1, 12, 10, 0, tzinfo=timezone.utc)
UNKNOWN_ID = "01HZZZZZZZZZZZZZZZZZZZZZZZ"
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def client(db, processor, clock):
    app = create_app()

    def booking_service():
        return BookingService(db, payment_processor=processor, clock=clock, slot_lock=local_slot_lock)

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_booking_service] = booking_service
    app.dependency_overrides[get_slot_availability_service] = lambda: SlotAvailabilityService(db, clock=clock)
    app.dependency_overrides[get_payout_service] = lambda: PayoutService(db, processor, clock=clock)
    app.dependency_overrides[get_risk_scoring_service] = lambda: RiskScoringService(db, clock=clock)
    app.dependency_overrides[get_stripe_webhook_service] = lambda: StripeWebhookService(
        db, processor, booking_service=booking_service(), clock=clock
    )
    return TestClient(app)


def create_payload(coach, **overrides):
    payload = {
        "coach_id": coach.id,
        "student_id": "student-1",
        "scheduled_start": START.isoformat(),
        "session_minutes": 60,
        "student_email": "sam@example.com",
    }
    payload.update(overrides)
    return payload


class TestBookingRoutes:
    def test_create_returns_checkout(self, client, coach):
        response = client.post("/api/v1/bookings", json=create_payload(coach))

        assert response.status_code == 201
        body = response.json()
        assert body["booking"]["status"] == "requested"
        assert body["booking"]["price_cents"] == 10_000
        assert body["booking"]["scheduled_start"].startswith("2030-01-12T10:00:00")
        assert body["checkout_url"].startswith("https://checkout.test/")
        assert body["side_effects"] == [{"name": "scheduling_create", "ok": True, "error": None, "skipped": True}]

    def test_full_lifecycle(self, client, coach, processor):
        booking = client.post("/api/v1/bookings", json=create_payload(coach)).json()["booking"]
        processor.register_payment("pi_route_1")

        confirmed = client.post(
            f"/api/v1/bookings/{booking['id']}/confirm",
            json={
                "payment_intent_id": "pi_route_1",
                "checkout_session_id": booking["stripe_checkout_session_id"],
            },
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["purchase_id"]

        again = client.post(f"/api/v1/bookings/{booking['id']}/confirm")
        assert again.json()["already_processed"] is True

        fetched = client.get(f"/api/v1/bookings/{booking['id']}")
        assert fetched.json()["status"] == "confirmed"

        cancelled = client.post(
            f"/api/v1/bookings/{booking['id']}/cancel", json={"cancelled_by": "student", "reason": "Ill"}
        )
        body = cancelled.json()
        assert body["booking"]["status"] == "cancelled"
        assert body["refund"]["amount_cents"] == 10_000
        assert body["refund"]["ok"] is True
        assert body["error"] is None

    def test_free_intro_and_reschedule(self, client, coach_factory):
        coach = coach_factory(free_intro_minutes=20)
        created = client.post(
            "/api/v1/bookings/free-intro",
            json={"coach_id": coach.id, "student_id": "s1", "scheduled_start": START.isoformat()},
        )
        assert created.status_code == 201
        booking_id = created.json()["booking"]["id"]

        moved = client.post(
            f"/api/v1/bookings/{booking_id}/reschedule",
            json={"new_start": (START + timedelta(hours=2)).isoformat(), "reason": "Clash"},
        )
        assert moved.status_code == 200
        assert moved.json()["booking"]["reschedule_count"] == 1
        assert moved.json()["booking"]["original_scheduled_start"].startswith("2030-01-12T10:00:00")

    def test_slot_conflict_is_a_problem_document(self, client, coach):
        client.post("/api/v1/bookings", json=create_payload(coach))
        response = client.post(
            "/api/v1/bookings",
            json=create_payload(coach, student_id="student-2", scheduled_start=(START + timedelta(minutes=30)).isoformat()),
        )

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/json")
        problem = response.json()
        assert problem["type"] == "about:blank"
        assert problem["title"] == "Bad Request"
        assert problem["status"] == 400
        assert problem["detail"] == "Time slot is not available"
        assert problem["code"] == "SLOT_UNAVAILABLE"
        assert problem["instance"] == "/api/v1/bookings"
        assert len(problem["errors"]["conflicting_booking_ids"]) == 1

    def test_naive_datetime_is_rejected(self, client, coach):
        response = client.post(
            "/api/v1/bookings", json=create_payload(coach, scheduled_start="2030-01-12T10:00:00")
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_offering_or_minutes_required(self, client, coach):
        payload = create_payload(coach)
        del payload["session_minutes"]
        assert client.post("/api/v1/bookings", json=payload).status_code == 422

    def test_unknown_fields_are_rejected(self, client, coach):
        response = client.post("/api/v1/bookings", json=create_payload(coach, price_cents=1))
        assert response.status_code == 422

    def test_unknown_booking(self, client):
        response = client.get(f"/api/v1/bookings/{UNKNOWN_ID}")
        assert response.status_code == 404
        assert response.json()["title"] == "Not Found"
        assert response.json()["detail"] == "Booking not found"

    def test_malformed_booking_id(self, client):
        assert client.get("/api/v1/bookings/not-a-ulid").status_code == 422

    def test_invalid_transition(self, client, coach):
        booking = client.post("/api/v1/bookings", json=create_payload(coach)).json()["booking"]
        response = client.post(f"/api/v1/bookings/{booking['id']}/complete")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_TRANSITION"


class TestAvailabilityRoute:
    def test_slots_for_a_day(self, client, coach):
        response = client.get(
            f"/api/v1/coaches/{coach.id}/available-slots",
            params={"date": "2030-01-12", "duration": 60, "viewer_tz": "America/New_York"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["slots"][0] == "08:00"
        assert body["display_slots"][0] == "03:00"

    def test_unknown_coach(self, client):
        response = client.get(f"/api/v1/coaches/{UNKNOWN_ID}/available-slots", params={"date": "2030-01-12"})
        assert response.status_code == 404


class TestPayoutRoutes:
    def test_cron_requires_secret(self, client):
        response = client.post("/api/v1/cron/payouts")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"
        wrong = client.post("/api/v1/cron/payouts", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401

    def test_cron_run_report(self, client, coach, confirmed_booking_factory):
        confirmed_booking_factory(coach, START)
        response = client.post("/api/v1/cron/payouts", headers=CRON_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["processed"] == 1
        assert body["totalAmount"] == 8000
        assert body["period"]["start"].startswith("2029-12-31")
        assert body["payouts"][0]["coachId"] == coach.id

    def test_admin_run_and_pending_balance(self, client, coach, confirmed_booking_factory):
        confirmed_booking_factory(coach, START)
        balance = client.get(f"/api/v1/admin/coaches/{coach.id}/pending-balance", headers=ADMIN_HEADERS)
        assert balance.json() == {"coach_id": coach.id, "amount_cents": 8000}

        assert client.post("/api/v1/admin/payouts/run").status_code == 401
        assert client.post("/api/v1/admin/payouts/run", headers=ADMIN_HEADERS).json()["processed"] == 1


class TestRiskRoutes:
    def test_coach_risk(self, client, coach_factory):
        coach = coach_factory(compliance_status="flagged")
        response = client.get(f"/api/v1/admin/coaches/{coach.id}/risk", headers=ADMIN_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["overall_score"] == 16
        assert body["factors"][0]["type"] == "compliance"

    def test_high_risk_requires_admin_key(self, client):
        assert client.get("/api/v1/admin/coaches/high-risk").status_code == 401
        response = client.get("/api/v1/admin/coaches/high-risk", headers=ADMIN_HEADERS)
        assert response.json() == {"coaches": [], "count": 0}


class TestStripeWebhookRoute:
    def test_missing_signature(self, client):
        response = client.post("/webhooks/stripe", content=b"{}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing stripe-signature header"

    def test_invalid_signature(self, client):
        response = client.post("/webhooks/stripe", content=b"{}", headers={"stripe-signature": "forged"})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"

    def test_checkout_completed_confirms_booking(self, client, coach):
        booking = client.post("/api/v1/bookings", json=create_payload(coach)).json()["booking"]
        event = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": booking["stripe_checkout_session_id"],
                    "payment_status": "paid",
                    "payment_intent": "pi_hook",
                    "amount_total": 10_000,
                    "metadata": {"booking_id": booking["id"], "type": "session"},
                }
            },
        }
        response = client.post(
            "/webhooks/stripe", content=json.dumps(event).encode(), headers={"stripe-signature": "fake-signature"}
        )
        assert response.status_code == 200
        assert response.json()["handled"] is True
        assert client.get(f"/api/v1/bookings/{booking['id']}").json()["status"] == "confirmed"


class TestOperationalRoutes:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["checks"] == {"database": True}

    def test_prometheus_scrape(self, client):
        response = client.get("/metrics/prometheus")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
