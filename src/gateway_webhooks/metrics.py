from prometheus_client import Counter, Gauge, Histogram

EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Total gateway webhook deliveries by outcome",
    ["result"],
)

PROCESSING_DURATION = Histogram(
    "webhook_processing_duration_seconds",
    "Event processing duration in seconds, retries included",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

PROCESSING_ERRORS_TOTAL = Counter(
    "webhook_processing_errors_total",
    "Total number of events that exhausted their retries",
)

RETRY_ATTEMPTS_TOTAL = Counter(
    "webhook_retry_attempts_total",
    "Total number of failed handler attempts",
)

SIDE_EFFECT_ERRORS_TOTAL = Counter(
    "webhook_side_effect_errors_total",
    "Notification or audit calls that failed and were skipped",
    ["kind"],
)

STUCK_EVENTS = Gauge(
    "webhook_stuck_events",
    "Events left in processing longer than the configured threshold",
)
