# backend/coachline/routes/payouts.py
"""
Payout routes.

    POST /api/v1/cron/payouts - Weekly run, called by the scheduler
    POST /api/v1/admin/payouts/run - Same run, triggered by an operator
    GET /api/v1/admin/coaches/{coach_id}/pending-balance - Unpaid earnings
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Path

from ..api.dependencies import get_payout_service, require_admin_key, require_cron_secret
from ..core.exceptions import DomainException
from ..schemas.payout import PayoutRunResponse, PendingBalanceResponse
from ..services.payout_service import PayoutService
from ._errors import ULID_PATH_PATTERN, handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["payouts-v1"])


async def _run(payout_service: PayoutService, trigger: str) -> PayoutRunResponse:
    logger.info("Payout run requested", extra={"trigger": trigger})
    try:
        report = await asyncio.to_thread(payout_service.run_weekly_payout)
    except DomainException as e:
        handle_domain_exception(e)
    return PayoutRunResponse.model_validate(report.to_payload())


@router.post(
    "/cron/payouts",
    response_model=PayoutRunResponse,
    dependencies=[Depends(require_cron_secret)],
    responses={401: {"description": "Invalid cron secret"}},
)
async def run_scheduled_payouts(
    payout_service: PayoutService = Depends(get_payout_service),
) -> PayoutRunResponse:
    return await _run(payout_service, "cron")


@router.post(
    "/admin/payouts/run",
    response_model=PayoutRunResponse,
    dependencies=[Depends(require_admin_key)],
)
async def run_payouts_now(
    payout_service: PayoutService = Depends(get_payout_service),
) -> PayoutRunResponse:
    return await _run(payout_service, "admin")


@router.get(
    "/admin/coaches/{coach_id}/pending-balance",
    response_model=PendingBalanceResponse,
    dependencies=[Depends(require_admin_key)],
)
async def get_pending_balance(
    coach_id: str = Path(..., description="Coach ULID", pattern=ULID_PATH_PATTERN),
    payout_service: PayoutService = Depends(get_payout_service),
) -> PendingBalanceResponse:
    amount = await asyncio.to_thread(payout_service.get_pending_balance, coach_id)
    return PendingBalanceResponse(coach_id=coach_id, amount_cents=amount)
