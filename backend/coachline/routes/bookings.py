# backend/coachline/routes/bookings.py
"""
Booking routes - API v1

All business logic delegated to BookingService.

Endpoints:
    POST / - Create a paid booking and open checkout
    POST /free-intro - Book a free intro session
    GET /{booking_id} - Booking details
    POST /{booking_id}/confirm - Confirm after payment (normally via webhook)
    POST /{booking_id}/cancel - Cancel, refunding per policy
    POST /{booking_id}/reschedule - Move to a new start
    POST /{booking_id}/complete - Mark a past session completed
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, status

from ..api.dependencies import get_booking_service
from ..core.exceptions import DomainException
from ..schemas.booking import (
    BookingActionResponse,
    BookingCancelRequest,
    BookingConfirmRequest,
    BookingCreateRequest,
    BookingRescheduleRequest,
    BookingResponse,
    FreeIntroCreateRequest,
)
from ..services.booking_service import BookingService
from ._errors import ULID_PATH_PATTERN, handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/bookings", tags=["bookings-v1"])


@router.post(
    "",
    response_model=BookingActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"description": "Slot unavailable or invalid offering"}},
)
async def create_booking(
    payload: BookingCreateRequest = Body(...),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    """Create a booking in ``requested`` and return the checkout URL."""
    try:
        result = await asyncio.to_thread(
            booking_service.create_booking,
            coach_id=payload.coach_id,
            student_id=payload.student_id,
            scheduled_start=payload.scheduled_start,
            session_minutes=payload.session_minutes,
            offering_id=payload.offering_id,
            student_email=payload.student_email,
            student_name=payload.student_name,
            time_zone=payload.time_zone,
        )
        return BookingActionResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/free-intro",
    response_model=BookingActionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_free_intro(
    payload: FreeIntroCreateRequest = Body(...),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        result = await asyncio.to_thread(
            booking_service.create_free_intro,
            coach_id=payload.coach_id,
            student_id=payload.student_id,
            scheduled_start=payload.scheduled_start,
            student_email=payload.student_email,
            student_name=payload.student_name,
            time_zone=payload.time_zone,
            buffer_minutes=payload.buffer_minutes,
        )
        return BookingActionResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
async def get_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(booking_service.get_booking, booking_id)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/confirm", response_model=BookingActionResponse)
async def confirm_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    payload: Optional[BookingConfirmRequest] = Body(default=None),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    """Confirming an already confirmed booking returns it unchanged."""
    payload = payload or BookingConfirmRequest()
    try:
        result = await asyncio.to_thread(
            booking_service.confirm_booking,
            booking_id,
            payment_intent_id=payload.payment_intent_id,
            checkout_session_id=payload.checkout_session_id,
            amount_cents=payload.amount_cents,
        )
        return BookingActionResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingActionResponse,
    responses={404: {"description": "Booking not found"}},
)
async def cancel_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    payload: Optional[BookingCancelRequest] = Body(default=None),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    """
    Cancel a booking.

    A failed refund does not fail the request: the booking is cancelled and
    ``refund_error`` explains what an operator needs to retry.
    """
    payload = payload or BookingCancelRequest()
    try:
        result = await asyncio.to_thread(
            booking_service.cancel_booking,
            booking_id,
            cancelled_by=payload.cancelled_by,
            reason=payload.reason,
        )
        return BookingActionResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/reschedule",
    response_model=BookingActionResponse,
    responses={404: {"description": "Booking not found"}, 400: {"description": "Time conflict"}},
)
async def reschedule_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    payload: BookingRescheduleRequest = Body(...),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        result = await asyncio.to_thread(
            booking_service.reschedule_booking,
            booking_id,
            new_start=payload.new_start,
            offering_id=payload.offering_id,
            session_minutes=payload.session_minutes,
            reason=payload.reason,
        )
        return BookingActionResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/complete", response_model=BookingActionResponse)
async def complete_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    try:
        result = await asyncio.to_thread(booking_service.complete_booking, booking_id)
        return BookingActionResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)
