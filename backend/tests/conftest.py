# backend/tests/conftest.py
"""
Pytest configuration.

Every test gets a fresh in-memory SQLite database, a frozen clock, and the
in-memory payment processor. Nothing here talks to Stripe, Redis or Cal.com.
"""

import os

# Set before any coachline import so settings pick them up
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["ADMIN_API_KEY"] = "test-admin-key"

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from coachline.core.booking_lock import local_slot_lock
from coachline.core.enums import StripeConnectStatus
from coachline.database import Base, init_db
from coachline.integrations.payment_processor import FakePaymentProcessor
from coachline.models.coach import Coach, CoachOffering, WeeklyAvailability
from coachline.models.payment import PendingPayout
from coachline.services.booking_service import BookingService

# Wednesday
FROZEN_NOW = datetime(2030, 1, 9, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def engine() -> Iterator[Engine]:
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Iterator[Session]:
    """Create a new database session for each test."""
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def coach_factory(db: Session, processor: FakePaymentProcessor) -> Callable[..., Coach]:
    """Create a coach with an active payout account and a 60-minute $100 offering."""
    counter = {"n": 0}

    def _create(
        *,
        timezone_name: str = "UTC",
        with_account: bool = True,
        price_cents: int = 10_000,
        duration_minutes: int = 60,
        buffer_minutes: Optional[int] = None,
        default_buffer_minutes: int = 0,
        free_intro_minutes: Optional[int] = None,
        weekly: Optional[list] = None,
        **fields,
    ) -> Coach:
        counter["n"] += 1
        account_id = f"acct_test_{counter['n']}" if with_account else None
        coach = Coach(
            display_name=fields.pop("display_name", f"Coach {counter['n']}"),
            timezone=timezone_name,
            stripe_account_id=account_id,
            stripe_connect_status=(
                StripeConnectStatus.ACTIVE.value if with_account else StripeConnectStatus.NOT_CONNECTED.value
            ),
            default_buffer_minutes=default_buffer_minutes,
            free_intro_enabled=free_intro_minutes is not None,
            free_intro_minutes=free_intro_minutes,
            created_at=fields.pop("created_at", FROZEN_NOW - timedelta(days=365)),
            **fields,
        )
        db.add(coach)
        db.flush()
        db.add(
            CoachOffering(
                coach_id=coach.id,
                name=f"{duration_minutes}-minute session",
                duration_minutes=duration_minutes,
                price_cents=price_cents,
                buffer_minutes=buffer_minutes,
            )
        )
        # Every day 08:00-18:00 unless a schedule is given
        for day, start, end in weekly if weekly is not None else [(d, "08:00", "18:00") for d in range(7)]:
            db.add(WeeklyAvailability(coach_id=coach.id, day_of_week=day, start_time=start, end_time=end))
        db.commit()
        if account_id:
            processor.register_account(account_id)
        return coach

    return _create


@pytest.fixture
def coach(coach_factory: Callable[..., Coach]) -> Coach:
    return coach_factory()


@pytest.fixture
def booking_service(
    db: Session, processor: FakePaymentProcessor, clock: FrozenClock
) -> BookingService:
    return BookingService(db, payment_processor=processor, clock=clock, slot_lock=local_slot_lock)


@pytest.fixture
def confirmed_booking_factory(
    booking_service: BookingService, processor: FakePaymentProcessor
) -> Callable[..., object]:
    """Create a paid booking and confirm it as the checkout webhook would."""
    counter = {"n": 0}

    def _create(coach: Coach, start: datetime, *, minutes: int = 60, student_id: str = "student-1"):
        counter["n"] += 1
        created = booking_service.create_booking(
            coach_id=coach.id,
            student_id=student_id,
            scheduled_start=start,
            session_minutes=minutes,
        )
        payment_intent_id = f"pi_test_{counter['n']}"
        processor.register_payment(payment_intent_id)
        confirmed = booking_service.confirm_booking(
            created.booking.id,
            payment_intent_id=payment_intent_id,
            checkout_session_id=created.booking.stripe_checkout_session_id,
            amount_cents=created.booking.price_cents,
        )
        return confirmed

    return _create


@pytest.fixture
def pending_balance(db: Session) -> Callable[[str], int]:
    """Current PendingPayout amount for a coach (0 when no row exists)."""

    def _balance(coach_id: str) -> int:
        db.expire_all()
        row = db.query(PendingPayout).filter(PendingPayout.coach_id == coach_id).first()
        return row.amount_cents if row else 0

    return _balance
