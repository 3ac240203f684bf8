"""
Payment ledger models.

Purchase rows are the system of record for money received. PendingPayout is
the per-coach running balance of earnings not yet transferred; Payout rows
record executed transfers. Dispute rows mirror processor chargebacks.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..core.enums import PayoutStatus, PurchaseStatus, PurchaseType
from ..database import Base


class Purchase(Base):
    """One successful payment, with the fee split fixed at payment time."""

    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    coach_id: Mapped[str] = mapped_column(String(26), ForeignKey("coaches.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=PurchaseType.SESSION.value)
    booking_id: Mapped[Optional[str]] = mapped_column(String(26), ForeignKey("bookings.id"), nullable=True, index=True)
    course_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    coach_earnings_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    stripe_checkout_session_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PurchaseStatus.PAID.value)

    # Cumulative refunds against this payment and the coach earnings reversed for them
    refunded_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reversed_earnings_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "platform_fee_cents + coach_earnings_cents = amount_cents",
            name="ck_purchases_split_balances",
        ),
        CheckConstraint("amount_cents > 0", name="ck_purchases_amount_positive"),
        CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= amount_cents",
            name="ck_purchases_refund_bounded",
        ),
        CheckConstraint(
            "reversed_earnings_cents >= 0 AND reversed_earnings_cents <= coach_earnings_cents",
            name="ck_purchases_reversal_bounded",
        ),
        CheckConstraint(
            "(booking_id IS NULL) <> (course_id IS NULL)",
            name="ck_purchases_single_subject",
        ),
    )

    @property
    def remaining_refundable_cents(self) -> int:
        return self.amount_cents - (self.refunded_amount_cents or 0)

    @property
    def unsettled_earnings_cents(self) -> int:
        return self.coach_earnings_cents - (self.reversed_earnings_cents or 0)

    def __repr__(self) -> str:
        return f"<Purchase {self.id} {self.type} {self.amount_cents}c {self.status}>"


class PendingPayout(Base):
    """Per-coach singleton accumulator of earnings not yet transferred."""

    __tablename__ = "pending_payouts"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    coach_id: Mapped[str] = mapped_column(String(26), ForeignKey("coaches.id"), unique=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_pending_payouts_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<PendingPayout coach={self.coach_id} {self.amount_cents}c txns={len(self.transaction_ids or [])}>"


class Payout(Base):
    """An executed transfer to a coach. Immutable apart from the delivery status."""

    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    coach_id: Mapped[str] = mapped_column(String(26), ForeignKey("coaches.id"), nullable=False, index=True)
    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payouts_amount_positive"),
    )

    def __repr__(self) -> str:
        return f"<Payout {self.id} coach={self.coach_id} {self.amount_cents}c {self.status}>"


class Dispute(Base):
    """Chargeback raised against a paid transaction."""

    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    stripe_dispute_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    coach_id: Mapped[Optional[str]] = mapped_column(String(26), ForeignKey("coaches.id"), nullable=True, index=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(26), ForeignKey("purchases.id"), nullable=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(40), nullable=False)
    evidence_due_by: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    earnings_reversed: Mapped[bool] = mapped_column(default=False, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Dispute {self.stripe_dispute_id} {self.status}>"
