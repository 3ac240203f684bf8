# backend/coachline/core/enums.py
"""
Core enums for the Coachline platform.

Closed enumerations for record statuses. Stored as plain strings so the
values stay readable in the database and in webhook metadata.
"""

from enum import Enum


class BookingType(str, Enum):
    """Kind of session a booking represents."""

    FREE_INTRO = "free_intro"
    PAID = "paid"


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    REQUESTED = "requested"  # Awaiting payment confirmation
    CONFIRMED = "confirmed"
    COMPLETED = "completed"  # Terminal
    CANCELLED = "cancelled"  # Terminal


TERMINAL_BOOKING_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})


class PurchaseType(str, Enum):
    SESSION = "session"
    COURSE = "course"


class PurchaseStatus(str, Enum):
    PAID = "paid"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class StripeConnectStatus(str, Enum):
    """Payout account status mirrored from the payment processor."""

    NOT_CONNECTED = "not_connected"
    PENDING = "pending"
    RESTRICTED = "restricted"
    ACTIVE = "active"


class ComplianceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    FLAGGED = "flagged"
    REJECTED = "rejected"


class CancelledBy(str, Enum):
    STUDENT = "student"
    COACH = "coach"
    ADMIN = "admin"


class DisputeStatus(str, Enum):
    """Dispute statuses as reported by the payment processor."""

    WARNING_NEEDS_RESPONSE = "warning_needs_response"
    WARNING_UNDER_REVIEW = "warning_under_review"
    WARNING_CLOSED = "warning_closed"
    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    CHARGE_REFUNDED = "charge_refunded"
    WON = "won"
    LOST = "lost"


DISPUTE_STATUSES_NEEDING_RESPONSE = frozenset(
    {DisputeStatus.NEEDS_RESPONSE, DisputeStatus.WARNING_NEEDS_RESPONSE}
)
DISPUTE_STATUSES_REVERSING_EARNINGS = frozenset(
    {DisputeStatus.LOST, DisputeStatus.CHARGE_REFUNDED}
)


class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskFactorType(str, Enum):
    DISPUTE_RATE = "dispute_rate"
    REFUND_RATE = "refund_rate"
    COMPLIANCE = "compliance"
    LOW_RATINGS = "low_ratings"
    RECENT_ACTIVITY = "recent_activity"
