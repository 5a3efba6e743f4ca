"""Prometheus metrics for the job queue and notification delivery."""

from prometheus_client import Counter, Histogram

JOB_OUTCOMES = Counter(
    "clinic_queue_job_outcomes_total",
    "Job executions by type and outcome",
    ["job_type", "outcome"],
)

JOB_DURATION = Histogram(
    "clinic_queue_job_duration_seconds",
    "Handler execution time",
    ["job_type"],
)

JOBS_ENQUEUED = Counter(
    "clinic_queue_jobs_enqueued_total",
    "Jobs accepted by enqueue, including coalesced requests",
    ["job_type", "coalesced"],
)

NOTIFICATION_DELIVERIES = Counter(
    "clinic_queue_notification_deliveries_total",
    "Notification delivery attempts by channel and result",
    ["channel", "result"],
)
