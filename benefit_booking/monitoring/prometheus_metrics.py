"""
Prometheus metrics for the benefit booking engine.

Service timings come from ``@BaseService.measure_operation``; domain counters
(booking transitions, credit lock outcomes, seat rejections, ledger
movements) are incremented by the services directly.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so importing the module twice (tests, workers) never collides
REGISTRY = CollectorRegistry()

http_request_duration_seconds = Histogram(
    "benefit_booking_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "benefit_booking_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

service_operation_duration_seconds = Histogram(
    "benefit_booking_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "benefit_booking_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "benefit_booking_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "benefit_booking_transitions_total",
    "Booking lifecycle transitions by event and outcome",
    ["event", "outcome"],  # outcome: applied | lost_race
    registry=REGISTRY,
)

seat_rejections_total = Counter(
    "benefit_booking_seat_rejections_total",
    "Seat reservations refused by the slot directory",
    ["reason"],  # full | inactive | not_found
    registry=REGISTRY,
)

credit_movements_total = Counter(
    "benefit_booking_credit_movements_total",
    "Credit units moved through the ledger",
    ["entry_type"],  # debit | refund | forfeit | adjustment
    registry=REGISTRY,
)

credit_lock_total = Counter(
    "benefit_booking_credit_lock_total",
    "Cross-process credit lock acquisition attempts",
    ["outcome"],  # acquired | contended | unavailable
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_http_request(method: str, endpoint: str, duration: float, status_code: int) -> None:
        labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}
        http_request_duration_seconds.labels(**labels).observe(duration)
        http_requests_total.labels(**labels).inc()
        PrometheusMetrics._invalidate_cache()

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
            service: Service name (e.g., 'BookingEngine')
            operation: Operation/method name (e.g., 'book')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Exception class name if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_booking_transition(event: str, outcome: str = "applied") -> None:
        booking_transitions_total.labels(event=event, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_seat_rejection(reason: str) -> None:
        seat_rejections_total.labels(reason=reason).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_credit_movement(entry_type: str, amount: int = 1) -> None:
        credit_movements_total.labels(entry_type=entry_type).inc(amount)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_credit_lock(outcome: str) -> None:
        credit_lock_total.labels(outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """Prometheus exposition payload, cached for a second between scrapes."""
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        if payload is not None and ts is not None and (now - ts) <= PrometheusMetrics._cache_ttl_seconds:
            return payload

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
            PrometheusMetrics._cache_ts = monotonic()
            return PrometheusMetrics._cache_payload

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
