"""
ARQ Background Worker for EventPipe.

One WorkerSettings class per queue, plus a scheduler that enqueues the
periodic metering jobs:

    arq eventpipe.worker.WebhookDeliveryWorker
    arq eventpipe.worker.IncomingWebhookWorker
    arq eventpipe.worker.UsageAggregationWorker
    arq eventpipe.worker.ActiveSeatsWorker
    arq eventpipe.worker.StripeUsageReportWorker
    arq eventpipe.worker.NotificationWorker
    arq eventpipe.worker.SchedulerWorker
"""
from typing import Any, Awaitable, Callable

import httpx
import redis.asyncio as redis
from arq import Retry, cron
from prometheus_client import start_http_server

from eventpipe.config import settings
from eventpipe.logging_config import configure_logging, get_logger
from eventpipe.queue import (
    ACTIVE_SEATS_QUEUE,
    INCOMING_WEBHOOK_QUEUE,
    NOTIFICATION_QUEUE,
    STRIPE_USAGE_REPORT_QUEUE,
    USAGE_AGGREGATION_QUEUE,
    WEBHOOK_DELIVERY_QUEUE,
    close_pool,
    enqueue,
    get_queue_options,
    redis_settings,
)
from eventpipe.routes.metrics import track_job_failed, track_job_retry
from eventpipe.sentry_config import capture_exception, configure_sentry
from eventpipe.services.incoming_webhooks import (
    EventRecordNotFound,
    IncomingWebhookJob,
    UnknownProviderError,
    process_incoming_event,
)
from eventpipe.services.notifications import (
    NotificationJob,
    NotificationRecipientNotFound,
    send_notification,
)
from eventpipe.services.stripe_service import StripeService
from eventpipe.services.usage_aggregation import aggregate_usage, snapshot_active_seats
from eventpipe.services.usage_reporting import report_usage
from eventpipe.services.usage_tracking import InvalidHourBucket
from eventpipe.services.webhook_delivery import MAX_ATTEMPTS, WebhookDeliveryJob, deliver_webhook

logger = get_logger(component="Worker")

REDIS_SETTINGS = redis_settings()

# Retrying cannot change the outcome of these
NON_RETRYABLE_ERRORS = (
    EventRecordNotFound,
    UnknownProviderError,
    InvalidHourBucket,
    NotificationRecipientNotFound,
)


async def startup(ctx: dict) -> None:
    configure_logging()
    configure_sentry()
    # Worker counters live in this process; /metrics on the API never sees them
    if settings.WORKER_METRICS_PORT:
        start_http_server(settings.WORKER_METRICS_PORT)
        logger.info("worker_metrics_exporter_started", port=settings.WORKER_METRICS_PORT)
    ctx["http_client"] = httpx.AsyncClient(follow_redirects=False)
    # ctx["redis"] is ARQ's own pool; counters get a decoded client
    ctx["counters"] = redis.from_url(settings.REDIS_URL, decode_responses=True)
    ctx["stripe"] = StripeService()
    logger.info("worker_started")


async def shutdown(ctx: dict) -> None:
    await ctx["http_client"].aclose()
    await ctx["counters"].aclose()
    await close_pool()
    logger.info("worker_stopped")


async def run_with_retries(
    ctx: dict,
    queue_name: str,
    handler: Callable[[], Awaitable[Any]],
    final_attempt: bool = False,
) -> Any:
    """
    Run a queue handler under the queue's retry policy.

    A failure below the attempt limit is turned into arq.Retry with
    exponential backoff; the last attempt, and non-retryable errors,
    re-raise and fail the job. final_attempt lets a handler with its own
    attempt count end the job before ARQ's max_tries.
    """
    options = get_queue_options(queue_name)
    job_try = ctx.get("job_try", 1)
    log = get_logger(component="Worker", queue=queue_name, job_id=ctx.get("job_id"), job_try=job_try)

    try:
        return await handler()
    except NON_RETRYABLE_ERRORS as exc:
        track_job_failed(queue_name)
        log.error("job_failed", error=str(exc), retryable=False)
        capture_exception()
        raise
    except Exception as exc:
        if job_try < options.attempts and not final_attempt:
            defer = options.backoff_for(job_try)
            track_job_retry(queue_name)
            log.warning("job_retry_scheduled", error=str(exc), defer_seconds=defer)
            raise Retry(defer=defer) from exc

        track_job_failed(queue_name)
        log.error("job_failed", error=str(exc), attempts=options.attempts)
        capture_exception()
        raise


async def deliver_webhook_task(ctx: dict, payload: dict) -> dict:
    job = WebhookDeliveryJob(**payload)
    # Attempts after the first are substrate retries of the same job
    job.attempt_number = job.attempt_number + ctx.get("job_try", 1) - 1
    return await run_with_retries(
        ctx,
        WEBHOOK_DELIVERY_QUEUE,
        lambda: deliver_webhook(job, ctx["http_client"]),
        final_attempt=job.attempt_number >= MAX_ATTEMPTS,
    )


async def process_incoming_webhook_task(ctx: dict, payload: dict) -> dict:
    job = IncomingWebhookJob(**payload)
    return await run_with_retries(ctx, INCOMING_WEBHOOK_QUEUE, lambda: process_incoming_event(job))


async def aggregate_usage_task(ctx: dict, payload: dict) -> dict:
    return await run_with_retries(
        ctx,
        USAGE_AGGREGATION_QUEUE,
        lambda: aggregate_usage(ctx["counters"], payload.get("hour_bucket")),
    )


async def snapshot_active_seats_task(ctx: dict, payload: dict) -> dict:
    return await run_with_retries(
        ctx,
        ACTIVE_SEATS_QUEUE,
        lambda: snapshot_active_seats(payload.get("date")),
    )


async def report_usage_task(ctx: dict, payload: dict) -> dict:
    return await run_with_retries(
        ctx,
        STRIPE_USAGE_REPORT_QUEUE,
        lambda: report_usage(ctx["stripe"], payload.get("date")),
    )


async def send_notification_task(ctx: dict, payload: dict) -> dict:
    job = NotificationJob(**payload)
    return await run_with_retries(ctx, NOTIFICATION_QUEUE, lambda: send_notification(job))


# Scheduled triggers: they only enqueue, so a slow job never blocks the scheduler

async def schedule_usage_aggregation(ctx: dict) -> None:
    await enqueue(USAGE_AGGREGATION_QUEUE, {})


async def schedule_active_seats(ctx: dict) -> None:
    await enqueue(ACTIVE_SEATS_QUEUE, {})


async def schedule_usage_report(ctx: dict) -> None:
    await enqueue(STRIPE_USAGE_REPORT_QUEUE, {})


# ARQ reads these classes through __dict__, so every attribute is spelled
# out per class rather than inherited.

class WebhookDeliveryWorker:
    """Use with 'arq eventpipe.worker.WebhookDeliveryWorker'"""
    queue_name = WEBHOOK_DELIVERY_QUEUE
    functions = [deliver_webhook_task]
    max_tries = get_queue_options(WEBHOOK_DELIVERY_QUEUE).attempts
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


class IncomingWebhookWorker:
    queue_name = INCOMING_WEBHOOK_QUEUE
    functions = [process_incoming_webhook_task]
    max_tries = get_queue_options(INCOMING_WEBHOOK_QUEUE).attempts
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


class UsageAggregationWorker:
    queue_name = USAGE_AGGREGATION_QUEUE
    functions = [aggregate_usage_task]
    max_tries = get_queue_options(USAGE_AGGREGATION_QUEUE).attempts
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


class ActiveSeatsWorker:
    queue_name = ACTIVE_SEATS_QUEUE
    functions = [snapshot_active_seats_task]
    max_tries = get_queue_options(ACTIVE_SEATS_QUEUE).attempts
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


class StripeUsageReportWorker:
    queue_name = STRIPE_USAGE_REPORT_QUEUE
    functions = [report_usage_task]
    max_tries = get_queue_options(STRIPE_USAGE_REPORT_QUEUE).attempts
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


class NotificationWorker:
    queue_name = NOTIFICATION_QUEUE
    functions = [send_notification_task]
    max_tries = get_queue_options(NOTIFICATION_QUEUE).attempts
    max_jobs = settings.WORKER_CONCURRENCY
    job_timeout = settings.WORKER_JOB_TIMEOUT
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


class SchedulerWorker:
    """Cron triggers, all times UTC. They only enqueue."""
    queue_name = "scheduler"
    cron_jobs = [
        cron(schedule_usage_aggregation, minute=5, unique=True),
        cron(schedule_active_seats, hour=0, minute=15, unique=True),
        cron(schedule_usage_report, hour=1, minute=0, unique=True),
    ]
    redis_settings = REDIS_SETTINGS
    on_startup = startup
    on_shutdown = shutdown


WORKERS = {
    WEBHOOK_DELIVERY_QUEUE: WebhookDeliveryWorker,
    INCOMING_WEBHOOK_QUEUE: IncomingWebhookWorker,
    USAGE_AGGREGATION_QUEUE: UsageAggregationWorker,
    ACTIVE_SEATS_QUEUE: ActiveSeatsWorker,
    STRIPE_USAGE_REPORT_QUEUE: StripeUsageReportWorker,
    NOTIFICATION_QUEUE: NotificationWorker,
}
