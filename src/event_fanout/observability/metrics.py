"""Prometheus metrics for publishing and job processing."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("fanout", "Event fan-out worker information")

# ---------------------------------------------------------------------------
# Publisher metrics
# ---------------------------------------------------------------------------

JOBS_ENQUEUED = Counter(
    "fanout_jobs_enqueued_total",
    "Jobs accepted by the broker",
    ["queue", "handler"],
)

JOBS_DEDUPLICATED = Counter(
    "fanout_jobs_deduplicated_total",
    "Enqueues skipped because the broker already held the job id",
    ["queue", "handler"],
)

EVENTS_DROPPED = Counter(
    "fanout_events_dropped_total",
    "Events published with no bound handler",
    ["event_type"],
)

# ---------------------------------------------------------------------------
# Processor metrics
# ---------------------------------------------------------------------------

JOBS_COMPLETED = Counter(
    "fanout_jobs_completed_total",
    "Jobs whose handler returned successfully",
    ["queue", "handler"],
)

JOBS_FAILED = Counter(
    "fanout_jobs_failed_total",
    "Job attempts that raised (final=true once no retry remains)",
    ["queue", "handler", "final"],
)

JOB_DURATION = Histogram(
    "fanout_job_duration_seconds",
    "Handler execution time",
    ["queue"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

WORKERS_ACTIVE = Gauge(
    "fanout_workers_active",
    "Queue workers currently consuming",
)


def start_metrics_server(port: int = 9090) -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    SYSTEM_INFO.info({"version": "0.1.0"})
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def record_enqueued(queue: str, handler: str) -> None:
    JOBS_ENQUEUED.labels(queue=queue, handler=handler).inc()


def record_deduplicated(queue: str, handler: str) -> None:
    JOBS_DEDUPLICATED.labels(queue=queue, handler=handler).inc()


def record_dropped(event_type: str) -> None:
    EVENTS_DROPPED.labels(event_type=event_type).inc()


def record_completed(queue: str, handler: str) -> None:
    JOBS_COMPLETED.labels(queue=queue, handler=handler).inc()


def record_failed(queue: str, handler: str, final: bool) -> None:
    JOBS_FAILED.labels(queue=queue, handler=handler, final=str(final).lower()).inc()


def observe_job_duration(queue: str, seconds: float) -> None:
    JOB_DURATION.labels(queue=queue).observe(seconds)


def set_workers_active(count: int) -> None:
    WORKERS_ACTIVE.set(count)
