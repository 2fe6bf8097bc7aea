"""
Prometheus metrics: transitions applied/rejected, assignment outcomes, notification emission.
"""
from prometheus_client import Counter, Gauge, generate_latest

transitions_total = Counter(
    "transitions_total",
    "Total status transitions committed",
    ["kind", "status"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total status transitions rejected by the validator or ownership checks",
    ["kind", "reason"],
)

# Coordinator: "assigned" or the error code that ended the attempt
assignments_total = Counter(
    "assignments_total",
    "Total driver assignment attempts by outcome",
    ["outcome"],
)

notifications_emitted_total = Counter(
    "notifications_emitted_total",
    "Total notifications handed to the transport",
    ["event_kind"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notifications that could not be handed to the transport (state change kept)",
)

tracking_code_collisions_total = Counter(
    "tracking_code_collisions_total",
    "Total tracking code collisions caught at insert time and regenerated",
)

notification_queue_depth = Gauge(
    "notification_queue_depth",
    "Notifications waiting in the outbound queue (Redis list or SQS)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
