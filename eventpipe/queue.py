"""
Job submission interface backed by ARQ.

Every queue maps to exactly one ARQ task function and carries its own retry
policy. Delivery is at-least-once: handlers must be idempotent.
"""
from dataclasses import dataclass
from typing import Any

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from eventpipe.config import settings
from eventpipe.logging_config import get_logger
from eventpipe.routes.metrics import track_job_enqueued

logger = get_logger(component="Queue")


WEBHOOK_DELIVERY_QUEUE = "webhook-delivery"
INCOMING_WEBHOOK_QUEUE = "incoming-webhook-processing"
USAGE_AGGREGATION_QUEUE = "usage-aggregation"
ACTIVE_SEATS_QUEUE = "active-seats"
STRIPE_USAGE_REPORT_QUEUE = "stripe-usage-report"
NOTIFICATION_QUEUE = "notification"


@dataclass(frozen=True)
class QueueOptions:
    """Retry policy for one queue."""
    function: str
    attempts: int
    backoff_seconds: int

    def backoff_for(self, job_try: int) -> int:
        """Exponential backoff before retry number job_try (1-based)."""
        return self.backoff_seconds * 2 ** max(job_try - 1, 0)


QUEUES: dict[str, QueueOptions] = {
    WEBHOOK_DELIVERY_QUEUE: QueueOptions("deliver_webhook_task", settings.WEBHOOK_MAX_ATTEMPTS, 60),
    INCOMING_WEBHOOK_QUEUE: QueueOptions("process_incoming_webhook_task", 5, 5),
    USAGE_AGGREGATION_QUEUE: QueueOptions("aggregate_usage_task", 3, 60),
    ACTIVE_SEATS_QUEUE: QueueOptions("snapshot_active_seats_task", 3, 60),
    STRIPE_USAGE_REPORT_QUEUE: QueueOptions("report_usage_task", 3, 300),
    NOTIFICATION_QUEUE: QueueOptions("send_notification_task", 3, 10),
}


def get_queue_options(queue_name: str) -> QueueOptions:
    try:
        return QUEUES[queue_name]
    except KeyError:
        raise ValueError(f"Unknown queue: {queue_name}") from None


def redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(settings.REDIS_URL)


_pool: ArqRedis | None = None


async def get_pool() -> ArqRedis:
    """Get or create the shared ARQ redis pool."""
    global _pool
    if _pool is None:
        _pool = await create_pool(redis_settings())
    return _pool


async def close_pool():
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None


async def enqueue(
    queue_name: str,
    payload: dict[str, Any],
    *,
    job_id: str | None = None,
    defer_by: float | None = None,
) -> str | None:
    """
    Hand a job to the pipeline.

    Args:
        queue_name: One of the queue constants above
        payload: JSON-serialisable job data, passed to the handler as its only argument
        job_id: Optional deterministic id; ARQ ignores a second enqueue with the same id
        defer_by: Optional delay in seconds

    Returns:
        The job id, or None when a job with the same id already exists
    """
    options = get_queue_options(queue_name)
    pool = await get_pool()

    job = await pool.enqueue_job(
        options.function,
        payload,
        _queue_name=queue_name,
        _job_id=job_id,
        _defer_by=defer_by,
    )

    if job is None:
        logger.info("job_already_enqueued", queue=queue_name, job_id=job_id)
        return None

    track_job_enqueued(queue_name)
    logger.debug("job_enqueued", queue=queue_name, job_id=job.job_id)
    return job.job_id
