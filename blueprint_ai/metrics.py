from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# Admission related metrics
analysis_admitted_total = Counter(
    "analysis_admitted_total", "Analyses admitted and charged to the ledger"
)

# Quota rejects when hitting the monthly tier limit
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests"
)

# Job handoff to the AI worker failed after admission; ledger untouched
analysis_start_fail_total = Counter(
    "analysis_start_fail_total", "Number of analysis jobs that failed to start"
)

analysis_charge_fail_total = Counter(
    "analysis_charge_fail_total", "Started jobs whose ledger charge failed"
)

tier_upgrade_total = Counter(
    "tier_upgrade_total", "Subscription upgrades", ["tier"]
)

# Tracker metrics
job_poll_errors_total = Counter(
    "job_poll_errors_total", "Transient job status fetch failures"
)

job_watch_total = Counter(
    "job_watch_total", "Finished job watch sessions", ["outcome"]
)

# watch duration buckets follow the 3s poll cadence up to the 2 min deadline
_watch_buckets = (
    3.0,
    6.0,
    15.0,
    30.0,
    60.0,
    120.0,
)

job_watch_seconds = Histogram(
    "job_watch_seconds", "Duration of job watch sessions", buckets=_watch_buckets
)

# Jobs handed to the worker queue
analysis_queue_push_total = Counter(
    "analysis_queue_push_total", "Number of jobs pushed to the worker queue"
)

__all__ = [
    "analysis_admitted_total",
    "quota_reject_total",
    "analysis_start_fail_total",
    "analysis_charge_fail_total",
    "tier_upgrade_total",
    "job_poll_errors_total",
    "job_watch_total",
    "job_watch_seconds",
    "analysis_queue_push_total",
]
