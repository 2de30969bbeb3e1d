"""
Prometheus metrics endpoint.

Exposes pipeline metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# Job Queue Metrics
# ============================================

jobs_enqueued = Counter(
    'eventpipe_jobs_enqueued_total',
    'Total jobs handed to the queue',
    ['queue']
)

jobs_retried = Counter(
    'eventpipe_jobs_retried_total',
    'Total job retries scheduled by the worker',
    ['queue']
)

jobs_failed = Counter(
    'eventpipe_jobs_failed_total',
    'Total jobs that exhausted their attempts',
    ['queue']
)

# ============================================
# Outbound Webhook Metrics
# ============================================

webhook_deliveries = Counter(
    'eventpipe_webhook_deliveries_total',
    'Outbound webhook delivery attempts by outcome',
    ['outcome']
)

webhook_endpoints_exhausted = Counter(
    'eventpipe_webhook_endpoints_exhausted_total',
    'Deliveries that exhausted every retry',
    ['endpoint_id']
)

# ============================================
# Inbound Webhook Metrics
# ============================================

incoming_events = Counter(
    'eventpipe_incoming_events_total',
    'Incoming provider events by outcome',
    ['provider', 'outcome']
)

# ============================================
# Usage Metering Metrics
# ============================================

usage_records_written = Counter(
    'eventpipe_usage_records_written_total',
    'Usage records upserted',
    ['metric_type']
)

usage_reports = Counter(
    'eventpipe_usage_reports_total',
    'Per-organisation usage reports to Stripe by outcome',
    ['outcome']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_job_enqueued(queue: str):
    """Record a job being queued."""
    jobs_enqueued.labels(queue=queue).inc()


def track_job_retry(queue: str):
    """Record a job retry scheduled by the substrate."""
    jobs_retried.labels(queue=queue).inc()


def track_job_failed(queue: str):
    """Record a job failing permanently."""
    jobs_failed.labels(queue=queue).inc()


def track_webhook_delivery(outcome: str):
    """Record a delivery attempt (delivered, failed, config_error)."""
    webhook_deliveries.labels(outcome=outcome).inc()


def track_endpoint_exhausted(endpoint_id: str):
    webhook_endpoints_exhausted.labels(endpoint_id=endpoint_id).inc()


def track_incoming_event(provider: str, outcome: str):
    """Record an ingestion outcome (received, duplicate, rejected, processed, skipped, errored)."""
    incoming_events.labels(provider=provider, outcome=outcome).inc()


def track_usage_record(metric_type: str):
    usage_records_written.labels(metric_type=metric_type).inc()


def track_usage_report(outcome: str):
    """Record a usage report outcome (reported, skipped, failed)."""
    usage_reports.labels(outcome=outcome).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
