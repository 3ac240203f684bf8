# backend/coachline/core/money.py
"""
Money model for the Coachline platform.

All amounts are integer cents. Fractional results are rounded half-up with
integer arithmetic so no floating point value ever touches a balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re
from typing import Optional, Union

PLATFORM_FEE_PERCENT = 20
MINIMUM_PLATFORM_FEE_CENTS = 50

FULL_REFUND_HOURS = 24
PARTIAL_REFUND_HOURS = 2
PARTIAL_REFUND_PERCENT = 50

_CURRENCY_SYMBOLS = {"USD": "$", "CAD": "CA$", "AUD": "A$", "EUR": "€", "GBP": "£"}
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def _percent_of(amount_cents: int, percent: int) -> int:
    """Return ``round(amount_cents * percent / 100)`` rounding halves up."""
    return (amount_cents * percent + 50) // 100


def _require_non_negative(amount_cents: int, name: str = "amount_cents") -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise TypeError(f"{name} must be an integer number of cents")
    if amount_cents < 0:
        raise ValueError(f"{name} must be non-negative")


def platform_fee(
    amount_cents: int,
    *,
    percentage: int = PLATFORM_FEE_PERCENT,
    minimum_cents: int = MINIMUM_PLATFORM_FEE_CENTS,
) -> int:
    """Platform share of a paid transaction: percentage with a floor.

    Free sessions never reach this function; the call site guards on the
    booking type.
    """
    _require_non_negative(amount_cents)
    return max(_percent_of(amount_cents, percentage), minimum_cents)


def coach_earnings(amount_cents: int, fee_cents: int) -> int:
    _require_non_negative(amount_cents)
    _require_non_negative(fee_cents, "fee_cents")
    return amount_cents - fee_cents


@dataclass(frozen=True)
class FeeSplit:
    amount_cents: int
    platform_fee_cents: int
    coach_earnings_cents: int

    def to_payload(self) -> dict[str, int]:
        return {
            "amount_cents": self.amount_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "coach_earnings_cents": self.coach_earnings_cents,
        }


def split_payment(
    amount_cents: int,
    *,
    percentage: int = PLATFORM_FEE_PERCENT,
    minimum_cents: int = MINIMUM_PLATFORM_FEE_CENTS,
) -> FeeSplit:
    fee = platform_fee(amount_cents, percentage=percentage, minimum_cents=minimum_cents)
    return FeeSplit(
        amount_cents=amount_cents,
        platform_fee_cents=fee,
        coach_earnings_cents=coach_earnings(amount_cents, fee),
    )


@dataclass(frozen=True)
class CancellationPolicy:
    full_refund_hours: int = FULL_REFUND_HOURS
    partial_refund_hours: int = PARTIAL_REFUND_HOURS
    partial_refund_percent: int = PARTIAL_REFUND_PERCENT

    def __post_init__(self) -> None:
        if self.partial_refund_hours > self.full_refund_hours:
            raise ValueError("partial_refund_hours must not exceed full_refund_hours")
        if not 0 <= self.partial_refund_percent <= 100:
            raise ValueError("partial_refund_percent must be between 0 and 100")

    @classmethod
    def from_payload(cls, payload: Optional[dict[str, object]]) -> Optional["CancellationPolicy"]:
        if not payload:
            return None
        return cls(
            full_refund_hours=int(payload.get("full_refund_hours", FULL_REFUND_HOURS)),  # type: ignore[arg-type]
            partial_refund_hours=int(payload.get("partial_refund_hours", PARTIAL_REFUND_HOURS)),  # type: ignore[arg-type]
            partial_refund_percent=int(
                payload.get("partial_refund_percent", PARTIAL_REFUND_PERCENT)  # type: ignore[arg-type]
            ),
        )

    def to_payload(self) -> dict[str, int]:
        return {
            "full_refund_hours": self.full_refund_hours,
            "partial_refund_hours": self.partial_refund_hours,
            "partial_refund_percent": self.partial_refund_percent,
        }


@dataclass(frozen=True)
class RefundQuote:
    amount_cents: int
    reason: str
    band: str  # full | partial | none | free
    hours_until_start: float

    @property
    def is_refundable(self) -> bool:
        return self.amount_cents > 0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def refund_amount(
    scheduled_start: datetime,
    cancelled_at: datetime,
    original_amount_cents: int,
    policy: Optional[CancellationPolicy] = None,
    *,
    is_free_intro: bool = False,
) -> RefundQuote:
    """Policy-bound refund for a cancellation at ``cancelled_at``."""
    _require_non_negative(original_amount_cents, "original_amount_cents")
    policy = policy or CancellationPolicy()
    hours = (_as_utc(scheduled_start) - _as_utc(cancelled_at)).total_seconds() / 3600

    if is_free_intro or original_amount_cents == 0:
        return RefundQuote(0, "No refund - free session", "free", hours)

    if hours >= policy.full_refund_hours:
        return RefundQuote(
            original_amount_cents,
            f"Full refund - cancelled more than {policy.full_refund_hours} hours before booking",
            "full",
            hours,
        )
    if hours >= policy.partial_refund_hours:
        return RefundQuote(
            _percent_of(original_amount_cents, policy.partial_refund_percent),
            (
                f"Partial refund ({policy.partial_refund_percent}%) - cancelled "
                f"{policy.partial_refund_hours}-{policy.full_refund_hours} hours before booking"
            ),
            "partial",
            hours,
        )
    return RefundQuote(
        0,
        f"No refund - cancelled less than {policy.partial_refund_hours} hours before booking",
        "none",
        hours,
    )


def proportional_share(part_cents: int, whole_cents: int, share_cents: int) -> int:
    """Scale ``share_cents`` by ``part_cents / whole_cents``, rounding halves up."""
    if whole_cents <= 0:
        return 0
    part_cents = min(part_cents, whole_cents)
    return (share_cents * part_cents * 2 + whole_cents) // (whole_cents * 2)


def format_cents(cents: Optional[int], currency: str = "USD") -> str:
    """Render cents for display, e.g. ``format_cents(10000) == "$100.00"``."""
    code = (currency or "USD").upper()
    if cents is None:
        cents = 0
    amount = (Decimal(abs(cents)) / 100).quantize(Decimal("0.01"))
    sign = "-" if cents < 0 else ""
    symbol = _CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{amount:,.2f}"
    return f"{sign}{amount:,.2f} {code}"


def parse_currency_to_cents(value: Union[str, int, float, Decimal, None]) -> int:
    """Parse a user-entered amount ("$1,250.50", 12.5) into cents; unparseable input is 0."""
    if value is None:
        return 0
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        raw = Decimal(str(value))
    else:
        cleaned = _NON_NUMERIC.sub("", str(value))
        try:
            raw = Decimal(cleaned)
        except InvalidOperation:
            return 0
    if not raw.is_finite():
        return 0
    return int((raw * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
