"""Prometheus metrics instrumentation for webhook delivery."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

from hookrelay_protocols import AttemptOutcome, DispatchStatus


DISPATCH_RESULTS = Counter(
    "hookrelay_dispatch_results_total",
    "Per-subscription dispatch results.",
    labelnames=("status",),
)

ATTEMPTS = Counter(
    "hookrelay_attempts_total",
    "Delivery attempts by outcome kind and error class.",
    labelnames=("outcome", "error_class"),
)

ATTEMPT_LATENCY = Histogram(
    "hookrelay_attempt_latency_seconds",
    "HTTP latency of delivery attempts in seconds.",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

THROTTLES = Counter(
    "hookrelay_throttles_total",
    "Deliveries deferred without consuming retry budget.",
    labelnames=("reason",),
)

DEAD_LETTERS = Counter(
    "hookrelay_dead_letters_total",
    "Deliveries moved to the dead-letter state.",
)

RETRY_QUEUE_DEPTH = Gauge(
    "hookrelay_retry_queue_depth",
    "Entries currently in the retry queue.",
)

INFLIGHT = Gauge(
    "hookrelay_inflight_attempts",
    "HTTP attempts currently in progress.",
)


def dispatch_recorded(status: DispatchStatus) -> None:
    DISPATCH_RESULTS.labels(status=status.value).inc()


def attempt_recorded(outcome: AttemptOutcome) -> None:
    """Count an attempt and observe its latency."""

    error_class = outcome.error_class.value if outcome.error_class else "none"
    ATTEMPTS.labels(outcome=outcome.kind.value, error_class=error_class).inc()
    ATTEMPT_LATENCY.observe(max(outcome.latency_ms, 0.0) / 1000.0)


def throttle_recorded(reason: str) -> None:
    THROTTLES.labels(reason=reason).inc()


def dead_letter_recorded() -> None:
    DEAD_LETTERS.inc()


def queue_depth_observed(depth: int) -> None:
    RETRY_QUEUE_DEPTH.set(depth)
