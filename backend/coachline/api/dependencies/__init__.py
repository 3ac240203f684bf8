# backend/coachline/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .auth import require_admin_key, require_cron_secret
from .database import get_db
from .services import (
    get_booking_service,
    get_payment_processor,
    get_payout_service,
    get_risk_scoring_service,
    get_slot_availability_service,
    get_stripe_webhook_service,
)

__all__ = [
    # Auth
    "require_admin_key",
    "require_cron_secret",
    # Database
    "get_db",
    # Services
    "get_booking_service",
    "get_payment_processor",
    "get_payout_service",
    "get_risk_scoring_service",
    "get_slot_availability_service",
    "get_stripe_webhook_service",
]
