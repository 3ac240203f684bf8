# backend/coachline/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Collaborator clients are built once per process from settings; services are
built per request around the request's session.
"""

from functools import lru_cache
import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import settings
from ...integrations.calcom_client import CalComClient
from ...integrations.calendar_sync_client import CalendarSyncClient
from ...integrations.payment_processor import (
    FakePaymentProcessor,
    PaymentProcessor,
    PaymentProcessorError,
    StripePaymentProcessor,
)
from ...services.booking_service import BookingService
from ...services.payout_service import PayoutService
from ...services.risk_scoring import RiskScoringService
from ...services.slot_availability import SlotAvailabilityService
from ...services.stripe_webhook_service import StripeWebhookService
from .database import get_db

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_payment_processor() -> PaymentProcessor:
    """Stripe when configured; the in-memory processor outside production otherwise."""
    try:
        return StripePaymentProcessor(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        )
    except PaymentProcessorError as exc:
        if settings.environment == "production":
            raise
        logger.warning(
            "Falling back to FakePaymentProcessor due to configuration error",
            extra={"error": exc.message, "environment": settings.environment},
        )
        return FakePaymentProcessor()


@lru_cache(maxsize=1)
def get_calcom_client() -> Optional[CalComClient]:
    if not settings.calcom_configured:
        return None
    return CalComClient(api_key=settings.calcom_api_key, base_url=settings.calcom_api_url)


@lru_cache(maxsize=1)
def get_calendar_client() -> Optional[CalendarSyncClient]:
    if not settings.calendar_sync_url:
        return None
    return CalendarSyncClient(endpoint=settings.calendar_sync_url)


def get_booking_service(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> BookingService:
    """Get BookingService instance with its collaborators."""
    return BookingService(
        db,
        payment_processor=processor,
        calcom_client=get_calcom_client(),
        calendar_client=get_calendar_client(),
    )


def get_slot_availability_service(db: Session = Depends(get_db)) -> SlotAvailabilityService:
    return SlotAvailabilityService(db)


def get_payout_service(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> PayoutService:
    return PayoutService(db, processor)


def get_risk_scoring_service(db: Session = Depends(get_db)) -> RiskScoringService:
    return RiskScoringService(db)


def get_stripe_webhook_service(
    db: Session = Depends(get_db),
    booking_service: BookingService = Depends(get_booking_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> StripeWebhookService:
    return StripeWebhookService(db, processor, booking_service=booking_service)
