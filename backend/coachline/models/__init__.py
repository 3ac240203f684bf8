"""SQLAlchemy models. Importing this package registers every table on ``Base.metadata``."""

from .booking import Booking
from .coach import AvailabilityOverride, Coach, CoachOffering, WeeklyAvailability
from .payment import Dispute, PendingPayout, Payout, Purchase

__all__ = [
    "AvailabilityOverride",
    "Booking",
    "Coach",
    "CoachOffering",
    "Dispute",
    "PendingPayout",
    "Payout",
    "Purchase",
    "WeeklyAvailability",
]
