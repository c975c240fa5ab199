from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
EMAILS_QUEUED = Counter(
    "email_jobs_queued_total",
    "Email jobs handed to the broker by the producer",
    ["email_type", "mode"]  # mode=immediate|deferred|scheduled
)
EMAILS_SENT = Counter("emails_sent_total", "Emails accepted by the transmission provider", ["email_type"])
EMAIL_FAILURES = Counter("email_failures_total", "Transmission failures", ["type"])  # type=retryable|final
EMAILS_DELAYED = Counter(
    "email_jobs_delayed_total",
    "Jobs routed through the delay queue",
    ["reason"]  # scheduled|quota|retry
)
EMAILS_EXPIRED = Counter("email_jobs_expired_total", "Jobs discarded because expires_at had passed")
EMAILS_DISCARDED = Counter("email_jobs_discarded_total", "Unparseable jobs discarded by the worker")

QUOTA_USED = Gauge("email_quota_used", "Sends counted against today's quota")
QUEUE_DEPTH = Gauge("email_queue_depth", "Messages waiting per broker queue", ["queue"])

SCHEDULED_EMAILS_PROCESSED = Counter(
    "scheduled_emails_processed_total",
    "Persisted scheduled emails handled by the scheduler",
    ["outcome"]  # sent|rescheduled|failed|expired
)
SCHEDULED_EMAILS_RECOVERED = Counter(
    "scheduled_emails_recovered_total",
    "Scheduled emails returned to pending after a stale claim"
)

LEADER_STATUS = Gauge(
    "scheduler_leader_status",
    "Whether this instance currently runs the scheduler (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
