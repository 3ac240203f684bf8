"""
Best-effort side effects.

Calendar sync, scheduling-provider mirroring and similar calls must never
abort the booking transition that triggered them. ``run_side_effect`` runs
one, converts an ``ExternalServiceException`` into a failed
``SideEffectResult`` and logs it; callers attach the results to their
response so partial failures stay visible.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, Optional

from ..core.exceptions import ExternalServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SideEffectResult:
    name: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skip(cls, name: str, reason: str) -> "SideEffectResult":
        return cls(name=name, ok=True, skipped=True, data={"reason": reason})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "ok": self.ok}
        if self.error:
            payload["error"] = self.error
        if self.skipped:
            payload["skipped"] = True
        return payload


def run_side_effect(
    name: str,
    action: Callable[[], Optional[Dict[str, Any]]],
    *,
    context: Optional[Dict[str, Any]] = None,
) -> SideEffectResult:
    """Run ``action``; external-service failures become a failed result instead of raising."""
    try:
        data = action() or {}
    except ExternalServiceException as exc:
        prometheus_metrics.record_side_effect(name, ok=False)
        logger.warning(
            "side_effect_failed",
            extra={
                "side_effect": name,
                "error": exc.message,
                "service": exc.service,
                **(context or {}),
            },
        )
        return SideEffectResult(name=name, ok=False, error=exc.message)
    prometheus_metrics.record_side_effect(name, ok=True)
    return SideEffectResult(name=name, ok=True, data=data)
