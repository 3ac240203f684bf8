# backend/coachline/services/payout_service.py
"""
Payout Engine.

Weekly settlement of each coach's PendingPayout balance into one transfer.

Period: previous Monday 00:00 UTC to the most recent Monday 00:00 UTC.
Eligible coaches hold at least ``payout_minimum_cents`` and an account the
processor reports as charge- and payout-enabled at run time.

Each coach is processed independently: a failure is recorded in the report
and the run moves on. The transfer idempotency key is derived from the coach,
the period and the exact transaction set, and the Payout row carries the same
key, so a rerun over an already-settled set never pays twice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import PayoutStatus, StripeConnectStatus
from ..core.exceptions import (
    ConsistencyException,
    ExternalServiceException,
    NotFoundException,
    RepositoryException,
    ServiceException,
)
from ..core.timezone_utils import ensure_utc, next_weekday_midnight_utc
from ..integrations.payment_processor import PaymentProcessor
from ..models.payment import Payout
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock

logger = logging.getLogger(__name__)

NO_ACCOUNT_ERROR = "No Stripe Connect account"
INACTIVE_ACCOUNT_ERROR = "Stripe account not active"


def payout_period(now: datetime) -> Tuple[datetime, datetime]:
    """``(previous Monday 00:00, most recent Monday 00:00)`` in UTC; a Monday ``now`` ends on itself."""
    now = ensure_utc(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = midnight - timedelta(days=now.weekday())
    return end - timedelta(days=7), end


def payout_idempotency_key(
    coach_id: str, period_start: datetime, period_end: datetime, transaction_ids: Sequence[str]
) -> str:
    digest = hashlib.sha256(",".join(sorted(transaction_ids)).encode()).hexdigest()[:16]
    return (
        f"payout:{coach_id}:{ensure_utc(period_start).date().isoformat()}:"
        f"{ensure_utc(period_end).date().isoformat()}:{digest}"
    )


@dataclass
class CoachPayoutResult:
    coach_id: str
    status: str  # success | failed | skipped
    amount_cents: int
    error: Optional[str] = None
    payout_id: Optional[str] = None
    transfer_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "coachId": self.coach_id,
            "status": self.status,
            "amount": self.amount_cents,
        }
        if self.error:
            payload["error"] = self.error
        if self.payout_id:
            payload["payoutId"] = self.payout_id
        return payload


@dataclass
class PayoutRunReport:
    period_start: datetime
    period_end: datetime
    processed: int = 0
    failed: int = 0
    total_amount_cents: int = 0
    payouts: List[CoachPayoutResult] = field(default_factory=list)

    def add(self, result: CoachPayoutResult) -> None:
        self.payouts.append(result)
        if result.status == "success":
            self.processed += 1
            self.total_amount_cents += result.amount_cents
        elif result.status == "failed":
            self.failed += 1

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": True,
            "period": {
                "start": self.period_start.isoformat(),
                "end": self.period_end.isoformat(),
            },
            "processed": self.processed,
            "failed": self.failed,
            "totalAmount": self.total_amount_cents,
            "payouts": [p.to_payload() for p in self.payouts],
        }


class PayoutService(BaseService):
    """Runs the weekly payout and applies transfer status updates."""

    def __init__(
        self,
        db: Session,
        payment_processor: PaymentProcessor,
        *,
        clock: Optional[Clock] = None,
        minimum_cents: Optional[int] = None,
    ):
        super().__init__(db, clock=clock)
        self.payment_processor = payment_processor
        self.minimum_cents = (
            settings.payout_minimum_cents if minimum_cents is None else minimum_cents
        )
        self.payout_repository = RepositoryFactory.create_payout_repository(db)
        self.coach_repository = RepositoryFactory.create_coach_repository(db)
        self.purchase_repository = RepositoryFactory.create_purchase_repository(db)

    @BaseService.measure_operation("run_weekly_payout")
    def run_weekly_payout(self, now: Optional[datetime] = None) -> PayoutRunReport:
        run_at = ensure_utc(now) if now is not None else self.now()
        period_start, period_end = payout_period(run_at)
        report = PayoutRunReport(period_start=period_start, period_end=period_end)

        eligible = [p.coach_id for p in self.payout_repository.list_pending_at_least(self.minimum_cents)]
        self.logger.info(
            "Starting weekly payout run",
            extra={
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "eligible_coaches": len(eligible),
            },
        )

        for coach_id in eligible:
            try:
                result = self._pay_coach(coach_id, period_start, period_end, run_at)
            except (ConsistencyException, ExternalServiceException, NotFoundException) as exc:
                result = CoachPayoutResult(
                    coach_id=coach_id,
                    status="failed",
                    amount_cents=(exc.details or {}).get("amount_cents", 0),
                    error=exc.message,
                )
            except ServiceException as exc:
                self.logger.error(
                    "Payout bookkeeping failed", extra={"coach_id": coach_id, "error": exc.message}
                )
                result = CoachPayoutResult(
                    coach_id=coach_id, status="failed", amount_cents=0, error=exc.message
                )
            except RepositoryException as exc:
                # A transfer already made is found again by its idempotency key next run
                self.db.rollback()
                self.logger.error(
                    "Payout store error", extra={"coach_id": coach_id, "error": str(exc)}
                )
                result = CoachPayoutResult(
                    coach_id=coach_id, status="failed", amount_cents=0, error=str(exc)
                )
            if result.status == "failed":
                prometheus_metrics.record_payout_transfer("failed")
                self.logger.warning(
                    "Coach payout failed",
                    extra={"coach_id": coach_id, "error": result.error},
                )
            report.add(result)

        self.logger.info(
            "Weekly payout run finished",
            extra={
                "processed": report.processed,
                "failed": report.failed,
                "total_amount_cents": report.total_amount_cents,
            },
        )
        return report

    def _pay_coach(
        self, coach_id: str, period_start: datetime, period_end: datetime, run_at: datetime
    ) -> CoachPayoutResult:
        # Phase 1: snapshot the pending balance
        with self.transaction():
            coach = self.coach_repository.get_by_id(coach_id)
            if not coach:
                raise NotFoundException("Coach not found", details={"coach_id": coach_id})
            pending = self.payout_repository.get_pending(coach_id, for_update=True)
            amount = pending.amount_cents if pending else 0
            transaction_ids = list(pending.transaction_ids or []) if pending else []
            account_id = coach.stripe_account_id

        if amount < self.minimum_cents:
            return CoachPayoutResult(coach_id=coach_id, status="skipped", amount_cents=amount)
        if not account_id:
            raise ConsistencyException(NO_ACCOUNT_ERROR, details={"amount_cents": amount})

        key = payout_idempotency_key(coach_id, period_start, period_end, transaction_ids)
        existing = self.payout_repository.get_by_idempotency_key(key)
        if existing is not None:
            self.logger.info("Payout already recorded", extra={"coach_id": coach_id, "key": key})
            return CoachPayoutResult(
                coach_id=coach_id,
                status="skipped",
                amount_cents=existing.amount_cents,
                payout_id=existing.id,
                transfer_id=existing.stripe_transfer_id,
            )

        # Phase 2: re-check the account and transfer, no transaction held
        account = self.payment_processor.retrieve_account(account_id)
        if not account.is_active:
            with self.transaction():
                coach = self.coach_repository.get_by_id(coach_id)
                coach.stripe_connect_status = StripeConnectStatus.RESTRICTED.value
            raise ConsistencyException(INACTIVE_ACCOUNT_ERROR, details={"amount_cents": amount})

        platform_fees = self.purchase_repository.sum_platform_fees(coach_id, period_start, period_end)
        transfer = self.payment_processor.create_transfer(
            amount,
            settings.stripe_currency,
            account_id,
            {
                "coach_id": coach_id,
                "payout_period": f"{period_start.isoformat()}-{period_end.isoformat()}",
                "transaction_count": len(transaction_ids),
            },
            key,
        )
        prometheus_metrics.record_payout_transfer("succeeded")

        # Phase 3: record the payout and settle the balance together
        with self.transaction():
            payout = self.payout_repository.create(
                coach_id=coach_id,
                stripe_transfer_id=transfer.id,
                amount_cents=amount,
                currency=settings.stripe_currency,
                period_start=period_start,
                period_end=period_end,
                transaction_ids=transaction_ids,
                platform_fee_cents=platform_fees,
                status=PayoutStatus.PENDING.value,
                idempotency_key=key,
                created_at=run_at,
            )
            self.payout_repository.settle_pending(coach_id, amount, transaction_ids)
            coach = self.coach_repository.get_by_id(coach_id)
            coach.last_payout_at = run_at
            coach.next_payout_at = next_weekday_midnight_utc(run_at, weekday=0)

        self.log_operation(
            "coach_payout",
            coach_id=coach_id,
            payout_id=payout.id,
            transfer_id=transfer.id,
            amount_cents=amount,
            platform_fee_cents=platform_fees,
        )
        return CoachPayoutResult(
            coach_id=coach_id,
            status="success",
            amount_cents=amount,
            payout_id=payout.id,
            transfer_id=transfer.id,
        )

    @BaseService.measure_operation("apply_transfer_update")
    def apply_transfer_update(
        self, transfer_id: str, *, reversed: bool, failed: bool, paid: bool
    ) -> Optional[Payout]:
        """
        Mirror a transfer status change onto its Payout.

        A failed or reversed transfer puts the amount back into the coach's
        pending balance so the next run retries it.
        """
        with self.transaction():
            payout = self.payout_repository.get_by_transfer_id(transfer_id)
            if payout is None:
                self.logger.warning("Transfer update for unknown payout", extra={"transfer_id": transfer_id})
                return None

            if reversed or failed:
                if payout.status == PayoutStatus.FAILED.value:
                    return payout
                self.payout_repository.mark_status(
                    payout,
                    PayoutStatus.FAILED,
                    failure_reason="Transfer reversed" if reversed else "Transfer failed",
                )
                self.payout_repository.apply_pending_delta(
                    payout.coach_id,
                    payout.amount_cents,
                    add_ids=[f"failed-transfer-{transfer_id}"],
                )
                self.logger.error(
                    "Payout transfer failed, amount returned to pending",
                    extra={"payout_id": payout.id, "transfer_id": transfer_id},
                )
            elif paid and payout.status != PayoutStatus.PAID.value:
                self.payout_repository.mark_status(payout, PayoutStatus.PAID, at=self.now())
            return payout

    def get_pending_balance(self, coach_id: str) -> int:
        pending = self.payout_repository.get_pending(coach_id)
        return pending.amount_cents if pending else 0
