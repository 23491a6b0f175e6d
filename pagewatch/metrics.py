"""Prometheus metrics for PageWatch."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pagewatch", "PageWatch application info")
app_info.info({"version": "0.1.0", "name": "pagewatch"})

# Check metrics
checks_total = Counter(
    "pagewatch_checks_total",
    "Total number of completed target checks",
    ["mode", "status"],
)

check_errors_total = Counter(
    "pagewatch_check_errors_total",
    "Total number of failed target checks",
    ["mode", "error_kind"],
)

check_duration_seconds = Histogram(
    "pagewatch_check_duration_seconds",
    "Time spent checking a single target",
    ["mode"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Notification metrics
notifications_sent_total = Counter(
    "pagewatch_notifications_sent_total",
    "Total number of notifications dispatched",
    ["channel", "status"],
)

notifications_suppressed_total = Counter(
    "pagewatch_notifications_suppressed_total",
    "Changes that did not produce a notification",
    ["reason"],
)

# Session pool metrics
pool_sessions_in_use = Gauge(
    "pagewatch_pool_sessions_in_use",
    "Browser sessions currently leased from the pool",
)

pool_consecutive_errors = Gauge(
    "pagewatch_pool_consecutive_errors",
    "Consecutive acquisition/navigation failures seen by the pool",
)

pool_resets_total = Counter(
    "pagewatch_pool_resets_total",
    "Total number of forced pool resets",
    ["reason"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "pagewatch_scheduler_runs_total",
    "Total number of scheduler ticks",
    ["status"],
)

scheduler_due_targets = Gauge(
    "pagewatch_scheduler_due_targets",
    "Targets found due on the last tick",
)

scheduler_last_success_timestamp = Gauge(
    "pagewatch_scheduler_last_success_timestamp",
    "Unix timestamp of the last successful check across all targets",
)


def record_check(mode: str, status: str, duration: float, error_kind: str | None = None):
    """Record a finished pipeline invocation."""
    checks_total.labels(mode=mode, status=status).inc()
    check_duration_seconds.labels(mode=mode).observe(duration)
    if error_kind:
        check_errors_total.labels(mode=mode, error_kind=error_kind).inc()
    else:
        scheduler_last_success_timestamp.set(time.time())


def record_notification(channel: str, success: bool):
    """Record a notification dispatch attempt."""
    status = "success" if success else "error"
    notifications_sent_total.labels(channel=channel, status=status).inc()


def record_suppressed(reason: str):
    """Record a change that was not notified."""
    notifications_suppressed_total.labels(reason=reason).inc()


def update_pool_gauges(in_use: int, consecutive_errors: int):
    """Mirror the pool's live counters."""
    pool_sessions_in_use.set(in_use)
    pool_consecutive_errors.set(consecutive_errors)


def record_pool_reset(reason: str):
    """Record a forced pool reset."""
    pool_resets_total.labels(reason=reason).inc()


def record_scheduler_run(success: bool, due_count: int):
    """Record a scheduler tick."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(status=status).inc()
    scheduler_due_targets.set(due_count)
