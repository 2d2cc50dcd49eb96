"""
Prometheus metrics for the Scoreline coordination service.
Counters, histograms and gauges for locks, writes, jobs, reconciliation and upstream calls.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Locks ───────────────────────────────────────────────────────────────
LOCK_ACQUIRE = Counter(
    "sl_lock_acquire_total",
    "Advisory lock acquisition attempts",
    ["namespace", "outcome"],
)
LOCK_RELEASE_FAILURES = Counter(
    "sl_lock_release_failures_total",
    "Advisory lock releases that raised",
    ["namespace"],
)
DB_SLOW_ACQUIRE = Counter(
    "sl_db_slow_acquire_total",
    "Pool checkouts slower than one second",
)

# ── Write gate ──────────────────────────────────────────────────────────
WRITE_RESULTS = Counter(
    "sl_write_gate_results_total",
    "WriteGate outcomes",
    ["status", "source"],
)
WRITE_FIELDS_ACCEPTED = Counter(
    "sl_write_gate_fields_accepted_total",
    "Field updates that won arbitration and were persisted",
    ["field"],
)
WRITE_FIELDS_DROPPED = Counter(
    "sl_write_gate_fields_dropped_total",
    "Field updates dropped by priority/timestamp arbitration",
    ["field"],
)
WRITE_LATENCY = Histogram(
    "sl_write_gate_seconds",
    "Time from lock acquisition to commit",
    ["source"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)
EVENT_HANDLER_FAILURES = Counter(
    "sl_event_handler_failures_total",
    "Downstream match-updated handlers that raised",
    ["handler"],
)

# ── Jobs ────────────────────────────────────────────────────────────────
JOB_RUNS = Counter(
    "sl_job_runs_total",
    "Job executions by outcome",
    ["job", "outcome"],
)
JOB_STARTED = Counter(
    "sl_job_started_total",
    "Job bodies that actually started",
    ["job"],
)
JOB_DURATION = Histogram(
    "sl_job_duration_seconds",
    "Wall-clock duration of job bodies",
    ["job"],
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)
JOB_RUNNING = Gauge(
    "sl_job_running",
    "1 while a job body is executing in this process",
    ["job"],
)
JOB_TIMEOUTS = Counter(
    "sl_job_timeouts_total",
    "Job bodies that overran their timeout",
    ["job"],
)

# ── Reconciliation ──────────────────────────────────────────────────────
RECONCILE_ENQUEUED = Counter(
    "sl_reconcile_enqueued_total",
    "Match ids newly added to the pending set",
    ["bucket"],
)
RECONCILE_PENDING = Gauge(
    "sl_reconcile_pending",
    "Match ids currently waiting in the pending set",
)
RECONCILE_PROCESSED = Counter(
    "sl_reconcile_processed_total",
    "Pending match ids processed by the drain loop",
    ["status"],
)
RECONCILE_ERRORS = Counter(
    "sl_reconcile_errors_total",
    "Per-id failures during drain",
    ["kind"],
)

# ── Upstream ────────────────────────────────────────────────────────────
UPSTREAM_REQUESTS = Counter(
    "sl_upstream_requests_total",
    "Upstream pull endpoint requests",
    ["status"],
)
UPSTREAM_LATENCY = Histogram(
    "sl_upstream_latency_seconds",
    "Upstream pull endpoint latency",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
FEED_MESSAGES = Counter(
    "sl_feed_messages_total",
    "Push feed messages by handling outcome",
    ["outcome"],
)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
