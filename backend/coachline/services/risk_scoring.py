# backend/coachline/services/risk_scoring.py
"""
Risk Scoring Engine.

Read-only aggregation of a coach's purchase, refund and dispute history plus
profile signals into a 0-100 score. ``compute_risk_score`` is pure; the
service only loads its inputs.

Weights:
- dispute rate       40%
- refund rate        20%
- compliance flag    20%
- low ratings        10%
- new, no purchases  10%
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.enums import (
    DISPUTE_STATUSES_NEEDING_RESPONSE,
    ComplianceStatus,
    PurchaseStatus,
    RiskFactorType,
    RiskSeverity,
)
from ..core.exceptions import NotFoundException
from ..core.timezone_utils import ensure_utc
from ..models.coach import Coach
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock

logger = logging.getLogger(__name__)

HIGH_RISK_THRESHOLD = 50
ELEVATED_RISK_THRESHOLD = 70
NEW_COACH_DAYS = 30

# (threshold percent, severity, score), checked top-down with ">"
DISPUTE_TIERS: Tuple[Tuple[float, RiskSeverity, int], ...] = (
    (5, RiskSeverity.CRITICAL, 100),
    (2, RiskSeverity.HIGH, 75),
    (1, RiskSeverity.MEDIUM, 50),
    (0, RiskSeverity.LOW, 25),
)
REFUND_TIERS: Tuple[Tuple[float, RiskSeverity, int], ...] = (
    (10, RiskSeverity.CRITICAL, 100),
    (5, RiskSeverity.HIGH, 75),
    (2, RiskSeverity.MEDIUM, 50),
    (0, RiskSeverity.LOW, 25),
)

WEIGHT_PERCENT = {
    RiskFactorType.DISPUTE_RATE: 40,
    RiskFactorType.REFUND_RATE: 20,
    RiskFactorType.COMPLIANCE: 20,
    RiskFactorType.LOW_RATINGS: 10,
    RiskFactorType.RECENT_ACTIVITY: 10,
}

RECOMMEND_SUSPEND = (
    "CRITICAL: High dispute rate detected. Consider suspending coach until issues are resolved."
)
RECOMMEND_REVIEW_REFUNDS = (
    "High refund rate. Review coach's service quality and customer satisfaction."
)
RECOMMEND_COMPLIANCE = (
    "Compliance issues detected. Review coach's profile and business practices."
)
RECOMMEND_MONITOR = (
    "Overall risk score is high. Monitor this coach closely and consider additional verification."
)
RECOMMEND_RESPOND = (
    "Active disputes require response. Ensure evidence is submitted to Stripe before deadlines."
)


@dataclass(frozen=True)
class RiskFactor:
    type: RiskFactorType
    severity: RiskSeverity
    score: int
    description: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "score": self.score,
            "description": self.description,
            "details": self.details,
        }


@dataclass(frozen=True)
class RiskScore:
    coach_id: str
    overall_score: int
    factors: List[RiskFactor]
    recommendations: List[str]

    @property
    def is_high_risk(self) -> bool:
        return self.overall_score > HIGH_RISK_THRESHOLD

    def to_payload(self) -> Dict[str, Any]:
        return {
            "coach_id": self.coach_id,
            "overall_score": self.overall_score,
            "is_high_risk": self.is_high_risk,
            "factors": [f.to_payload() for f in self.factors],
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class RiskInputs:
    coach_id: str
    purchase_count: int
    refund_count: int
    dispute_count: int
    dispute_statuses: Sequence[str] = ()
    compliance_status: Optional[str] = None
    compliance_notes: Optional[str] = None
    rating_avg: Optional[float] = None
    rating_count: int = 0
    created_at: Optional[datetime] = None


def _tier(rate_percent: float, tiers: Iterable[Tuple[float, RiskSeverity, int]]) -> Optional[Tuple[RiskSeverity, int]]:
    for threshold, severity, score in tiers:
        if rate_percent > threshold:
            return severity, score
    return None


def _rate_factor(
    factor_type: RiskFactorType,
    label: str,
    count: int,
    purchases: int,
    tiers: Iterable[Tuple[float, RiskSeverity, int]],
) -> Optional[RiskFactor]:
    if purchases <= 0 or count <= 0:
        return None
    rate = count / purchases * 100
    tier = _tier(rate, tiers)
    if tier is None:
        return None
    severity, score = tier
    noun = "disputes" if factor_type == RiskFactorType.DISPUTE_RATE else "refunds"
    return RiskFactor(
        type=factor_type,
        severity=severity,
        score=score,
        description=f"{rate:.1f}% {label} rate ({count} {noun} / {purchases} purchases)",
        details={"rate": rate, "count": count, "purchase_count": purchases},
    )


def compute_risk_score(inputs: RiskInputs, *, now: datetime) -> RiskScore:
    factors: List[RiskFactor] = []

    dispute = _rate_factor(
        RiskFactorType.DISPUTE_RATE, "dispute", inputs.dispute_count, inputs.purchase_count, DISPUTE_TIERS
    )
    if dispute:
        factors.append(dispute)

    refund = _rate_factor(
        RiskFactorType.REFUND_RATE, "refund", inputs.refund_count, inputs.purchase_count, REFUND_TIERS
    )
    if refund:
        factors.append(refund)

    if inputs.compliance_status in (ComplianceStatus.FLAGGED.value, ComplianceStatus.REJECTED.value):
        factors.append(
            RiskFactor(
                type=RiskFactorType.COMPLIANCE,
                severity=RiskSeverity.HIGH,
                score=80,
                description=f"Compliance status: {inputs.compliance_status}",
                details={"compliance_status": inputs.compliance_status, "notes": inputs.compliance_notes},
            )
        )

    if inputs.rating_count >= 5 and (inputs.rating_avg or 0) < 3.0:
        avg = inputs.rating_avg or 0.0
        factors.append(
            RiskFactor(
                type=RiskFactorType.LOW_RATINGS,
                severity=RiskSeverity.MEDIUM,
                score=60,
                description=f"Low average rating: {avg:.1f}/5.0 ({inputs.rating_count} reviews)",
                details={"rating_avg": avg, "rating_count": inputs.rating_count},
            )
        )

    if inputs.created_at is not None and inputs.purchase_count == 0:
        age = ensure_utc(now) - ensure_utc(inputs.created_at)
        if age < timedelta(days=NEW_COACH_DAYS):
            factors.append(
                RiskFactor(
                    type=RiskFactorType.RECENT_ACTIVITY,
                    severity=RiskSeverity.LOW,
                    score=30,
                    description="New coach with no purchase history yet",
                    details={"days_since_creation": age.total_seconds() / 86400},
                )
            )

    # Sum in hundredths so rounding is exact half-up
    weighted = sum(f.score * WEIGHT_PERCENT[f.type] for f in factors)
    overall = max(0, min(100, (weighted + 50) // 100))

    return RiskScore(
        coach_id=inputs.coach_id,
        overall_score=overall,
        factors=factors,
        recommendations=_recommendations(factors, overall, inputs.dispute_statuses),
    )


def _recommendations(
    factors: Sequence[RiskFactor], overall: int, dispute_statuses: Sequence[str]
) -> List[str]:
    fired = {(f.type, f.severity) for f in factors}
    types = {f.type for f in factors}
    recommendations: List[str] = []
    if (RiskFactorType.DISPUTE_RATE, RiskSeverity.CRITICAL) in fired:
        recommendations.append(RECOMMEND_SUSPEND)
    if (RiskFactorType.REFUND_RATE, RiskSeverity.HIGH) in fired or (
        RiskFactorType.REFUND_RATE,
        RiskSeverity.CRITICAL,
    ) in fired:
        recommendations.append(RECOMMEND_REVIEW_REFUNDS)
    if RiskFactorType.COMPLIANCE in types:
        recommendations.append(RECOMMEND_COMPLIANCE)
    if overall > ELEVATED_RISK_THRESHOLD:
        recommendations.append(RECOMMEND_MONITOR)
    needing = {s.value for s in DISPUTE_STATUSES_NEEDING_RESPONSE}
    if any(status in needing for status in dispute_statuses):
        recommendations.append(RECOMMEND_RESPOND)
    return recommendations


class RiskScoringService(BaseService):
    """Loads purchase and dispute history and scores coaches on demand."""

    def __init__(self, db: Session, *, clock: Optional[Clock] = None):
        super().__init__(db, clock=clock)
        self.coach_repository = RepositoryFactory.create_coach_repository(db)
        self.purchase_repository = RepositoryFactory.create_purchase_repository(db)
        self.dispute_repository = RepositoryFactory.create_dispute_repository(db)

    def load_inputs(self, coach: Coach) -> RiskInputs:
        purchases = self.purchase_repository.list_for_coach(coach.id)
        disputes = self.dispute_repository.list_for_coach(coach.id)
        # Partially refunded purchases stay "paid" and are not counted
        refunds = [p for p in purchases if p.status == PurchaseStatus.REFUNDED.value]
        return RiskInputs(
            coach_id=coach.id,
            purchase_count=len(purchases),
            refund_count=len(refunds),
            dispute_count=len(disputes),
            dispute_statuses=[d.status for d in disputes],
            compliance_status=coach.compliance_status,
            compliance_notes=coach.compliance_notes,
            rating_avg=coach.rating_avg,
            rating_count=coach.rating_count or 0,
            created_at=coach.created_at,
        )

    @BaseService.measure_operation("compute_coach_risk_score")
    def compute_coach_risk_score(self, coach_id: str) -> RiskScore:
        coach = self.coach_repository.get_by_id(coach_id)
        if not coach:
            raise NotFoundException("Coach not found", details={"coach_id": coach_id})
        return compute_risk_score(self.load_inputs(coach), now=self.now())

    @BaseService.measure_operation("get_high_risk_coaches")
    def get_high_risk_coaches(self, coach_ids: Optional[List[str]] = None) -> List[RiskScore]:
        """Coaches scoring above the high-risk threshold, highest first."""
        coaches = (
            self.coach_repository.list_with_ids(coach_ids)
            if coach_ids is not None
            else self.coach_repository.get_all(limit=10_000)
        )
        now = self.now()
        scores = [compute_risk_score(self.load_inputs(c), now=now) for c in coaches]
        high = [s for s in scores if s.is_high_risk]
        return sorted(high, key=lambda s: s.overall_score, reverse=True)
