"""Prometheus metric definitions for monitor self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
SWEEP_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0)

# ---------------------------------------------------------------------------
# Request-level metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "chief_monitor_request_duration_seconds",
    "End-to-end request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "chief_monitor_requests_total",
    "Total number of requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Ingestion metrics
# ---------------------------------------------------------------------------

EVENTS_INGESTED_TOTAL = Counter(
    "chief_monitor_events_ingested_total",
    "Telemetry events received, by normalization outcome",
    labelnames=["result"],
)

# ---------------------------------------------------------------------------
# Alert metrics
# ---------------------------------------------------------------------------

ALERTS_OPENED_TOTAL = Counter(
    "chief_monitor_alerts_opened_total",
    "Total number of alerts opened",
    labelnames=["alert_type"],
)

ALERTS_CLOSED_TOTAL = Counter(
    "chief_monitor_alerts_closed_total",
    "Total number of alerts closed",
    labelnames=["alert_type", "trigger"],
)

EMAIL_DELIVERIES_TOTAL = Counter(
    "chief_monitor_email_deliveries_total",
    "Alert email delivery attempts",
    labelnames=["status"],
)

# ---------------------------------------------------------------------------
# Background sweep metrics
# ---------------------------------------------------------------------------

SWEEPS_TOTAL = Counter(
    "chief_monitor_sweeps_total",
    "Total number of background sweeps",
    labelnames=["sweep", "status"],
)

SWEEP_DURATION = Histogram(
    "chief_monitor_sweep_duration_seconds",
    "Time taken by a background sweep in seconds",
    labelnames=["sweep"],
    buckets=SWEEP_DURATION_BUCKETS,
)

CHECKS_BY_STATUS = Gauge(
    "chief_monitor_checks",
    "Enabled checks with an expected run time, by status after the last evaluator sweep",
    labelnames=["status"],
)

# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

APP_INFO = Info(
    "chief_monitor",
    "Chief monitor build information",
)
