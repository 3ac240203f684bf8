"""
Prometheus metrics module for Coachline.

Service operation timings come from the @measure_operation decorator; the
domain counters below are incremented by the booking, refund and payout
services.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so tests and multiple app instances do not collide with the default one
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "coachline_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "coachline_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "coachline_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "coachline_booking_transitions_total",
    "Booking state transitions",
    ["transition"],  # create_paid | create_free_intro | confirm | reschedule | complete | cancel
    registry=REGISTRY,
)

refunds_total = Counter(
    "coachline_refunds_total",
    "Refund attempts by outcome",
    ["outcome"],  # issued | skipped | failed
    registry=REGISTRY,
)

payout_transfers_total = Counter(
    "coachline_payout_transfers_total",
    "Per-coach payout transfer outcomes",
    ["outcome"],  # success | failed | skipped
    registry=REGISTRY,
)

slot_lock_total = Counter(
    "coachline_slot_lock_total",
    "Per-coach slot lock operations",
    ["action", "outcome"],
    registry=REGISTRY,
)

side_effects_total = Counter(
    "coachline_side_effects_total",
    "Best-effort side effect outcomes",
    ["name", "outcome"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Records Coachline metrics and renders the exposition payload."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_booking_transition(transition: str) -> None:
        booking_transitions_total.labels(transition=transition).inc()

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payout_transfer(outcome: str) -> None:
        payout_transfers_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_slot_lock(action: str, outcome: str) -> None:
        slot_lock_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def record_side_effect(name: str, ok: bool) -> None:
        side_effects_total.labels(name=name, outcome="ok" if ok else "error").inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
