"""
Incoming Webhook Processing

Records raw provider events on arrival and reconciles them on the
incoming-webhook-processing queue. processed_at is the idempotency gate:
provider redelivery and queue redelivery both end in an
"already_processed" skip.

    received -> skipped (already_processed | not_verified)
    received -> processing -> processed
    received -> processing -> errored (retry_count += 1, re-raised for retry)
"""
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.database import run_with_service_context
from eventpipe.logging_config import get_logger
from eventpipe.models.base import utcnow
from eventpipe.models.incoming_event import IncomingWebhookEvent
from eventpipe.queue import INCOMING_WEBHOOK_QUEUE, enqueue
from eventpipe.routes.metrics import track_incoming_event
from eventpipe.services.notifications import notify_org_owners
from eventpipe.services.stripe_events import ReconcileContext, handle_stripe_event

EnqueueFn = Callable[..., Awaitable[str | None]]
ProviderHandler = Callable[[ReconcileContext, str, dict[str, Any]], Awaitable[None]]

PROVIDER_HANDLERS: dict[str, ProviderHandler] = {
    "stripe": handle_stripe_event,
}


class EventRecordNotFound(Exception):
    pass


class UnknownProviderError(Exception):
    pass


class IncomingWebhookJob(BaseModel):
    """Payload of an incoming-webhook-processing job."""
    event_record_id: str
    provider: str
    event_type: str
    event_id: str


async def _find_event(session: AsyncSession, provider: str, event_id: str) -> IncomingWebhookEvent | None:
    result = await session.execute(
        select(IncomingWebhookEvent).where(
            IncomingWebhookEvent.provider == provider,
            IncomingWebhookEvent.event_id == event_id,
        )
    )
    return result.scalar_one_or_none()


async def record_incoming_event(
    provider: str,
    event_id: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    signature: str | None = None,
    verified: bool = True,
    enqueue_fn: EnqueueFn = enqueue,
) -> tuple[str, bool]:
    """
    Persist a raw provider event once and queue it for processing.

    Returns:
        (event_record_id, duplicate) - duplicates are neither stored nor queued again
    """
    log = get_logger(component="IncomingWebhook", provider=provider, event_id=event_id, event_type=event_type)

    async def _store(session: AsyncSession):
        existing = await _find_event(session, provider, event_id)
        if existing is not None:
            return existing.id, True
        record = IncomingWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            signature=signature,
            verified=verified,
        )
        session.add(record)
        await session.flush()
        return record.id, False

    try:
        record_id, duplicate = await run_with_service_context("IncomingWebhook.storeEvent", _store)
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        existing = await run_with_service_context(
            "IncomingWebhook.findDuplicate",
            lambda session: _find_event(session, provider, event_id),
        )
        record_id, duplicate = existing.id, True

    if duplicate:
        track_incoming_event(provider, "duplicate")
        log.info("duplicate_event_received", event_record_id=record_id)
        return record_id, True

    await enqueue_fn(
        INCOMING_WEBHOOK_QUEUE,
        IncomingWebhookJob(
            event_record_id=record_id,
            provider=provider,
            event_type=event_type,
            event_id=event_id,
        ).model_dump(),
    )
    track_incoming_event(provider, "received")
    log.info("event_recorded", event_record_id=record_id)
    return record_id, False


async def process_incoming_event(job: IncomingWebhookJob, *, enqueue_fn: EnqueueFn = enqueue) -> dict:
    """
    Reconcile one recorded provider event.

    Returns:
        {"success": True} or {"skipped": True, "reason": ...}

    Raises:
        EventRecordNotFound: the record does not exist
        UnknownProviderError: no handler table for the provider
        Exception: any handler failure, after error and retry_count are persisted
    """
    log = get_logger(
        component="IncomingWebhook",
        event_record_id=job.event_record_id,
        event_id=job.event_id,
        provider=job.provider,
        event_type=job.event_type,
    )
    log.info("processing_incoming_event")

    event = await run_with_service_context(
        "IncomingWebhook.fetchEvent",
        lambda session: session.get(IncomingWebhookEvent, job.event_record_id),
    )
    if event is None:
        raise EventRecordNotFound(f"Event record not found: {job.event_record_id}")

    if event.processed_at is not None:
        log.info("event_already_processed")
        track_incoming_event(job.provider, "skipped")
        return {"skipped": True, "reason": "already_processed"}

    if not event.verified:
        log.warning("skipping_unverified_event")
        track_incoming_event(job.provider, "skipped")
        return {"skipped": True, "reason": "not_verified"}

    try:
        handler = PROVIDER_HANDLERS.get(job.provider)
        if handler is None:
            raise UnknownProviderError(f"Unknown provider: {job.provider}")

        async def _reconcile(session: AsyncSession):
            ctx = ReconcileContext(session=session, event_record_id=event.id)
            await handler(ctx, event.event_type, event.payload)
            return ctx.notices

        notices = await run_with_service_context("IncomingWebhook.reconcile", _reconcile)

        # Enqueued after the reconcile transaction commits
        for notice in notices:
            await notify_org_owners(notice, dedupe_key=event.id, enqueue_fn=enqueue_fn)

        async def _mark_processed(session: AsyncSession):
            await session.execute(
                update(IncomingWebhookEvent)
                .where(IncomingWebhookEvent.id == event.id)
                .values(processed_at=utcnow(), error=None)
            )

        await run_with_service_context("IncomingWebhook.markProcessed", _mark_processed)
    except Exception as exc:
        log.error("incoming_event_failed", error=str(exc), exc_info=True)
        track_incoming_event(job.provider, "errored")

        async def _record_error(session: AsyncSession):
            await session.execute(
                update(IncomingWebhookEvent)
                .where(IncomingWebhookEvent.id == event.id)
                .values(
                    error=str(exc) or type(exc).__name__,
                    retry_count=IncomingWebhookEvent.retry_count + 1,
                )
            )

        try:
            await run_with_service_context("IncomingWebhook.updateError", _record_error)
        except Exception:
            log.error("incoming_event_error_not_recorded", exc_info=True)
        raise exc

    track_incoming_event(job.provider, "processed")
    log.info("incoming_event_processed", notices=len(notices))
    return {"success": True}
