# backend/coachline/routes/__init__.py
"""
API routes.

Versioned endpoints live under /api/v1; the Stripe webhook and health
check are unversioned.
"""

from . import availability, bookings, health, payouts, risk, stripe_webhooks

__all__ = [
    "availability",
    "bookings",
    "health",
    "payouts",
    "risk",
    "stripe_webhooks",
]
