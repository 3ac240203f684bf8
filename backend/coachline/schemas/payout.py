"""
Payout run schemas.

The run report keeps the camelCase keys the cron caller already consumes;
fields are snake_case in Python and serialized by alias.
"""

from typing import List, Optional

from pydantic import ConfigDict, Field

from ._strict_base import StrictModel


class _AliasedModel(StrictModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class PayoutPeriodResponse(_AliasedModel):
    start: str
    end: str


class CoachPayoutResponse(_AliasedModel):
    coach_id: str = Field(..., alias="coachId")
    status: str = Field(..., description="success or failed")
    amount: int = Field(..., description="Cents transferred or attempted")
    error: Optional[str] = None
    payout_id: Optional[str] = Field(default=None, alias="payoutId")


class PayoutRunResponse(_AliasedModel):
    success: bool
    period: PayoutPeriodResponse
    processed: int
    failed: int
    total_amount: int = Field(..., alias="totalAmount")
    payouts: List[CoachPayoutResponse] = Field(default_factory=list)


class PendingBalanceResponse(StrictModel):
    coach_id: str
    amount_cents: int
