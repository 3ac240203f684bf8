# backend/coachline/tasks/payout_tasks.py
"""
Scheduled payout task.

Runs the same weekly payout as the cron endpoint. Transfers carry
deterministic idempotency keys, so a retried or duplicated run pays nobody
twice.
"""

import logging
from typing import Any, Dict

from coachline.api.dependencies.services import get_payment_processor
from coachline.database import SessionLocal
from coachline.services.payout_service import PayoutService
from coachline.tasks.celery_app import typed_task

logger = logging.getLogger(__name__)


@typed_task(name="coachline.tasks.payout_tasks.run_weekly_payouts")
def run_weekly_payouts() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        report = PayoutService(db, get_payment_processor()).run_weekly_payout()
    finally:
        db.close()
    payload = report.to_payload()
    logger.info(
        "Weekly payout task finished",
        extra={
            "processed": payload["processed"],
            "failed": payload["failed"],
            "total_amount_cents": payload["totalAmount"],
        },
    )
    return payload
