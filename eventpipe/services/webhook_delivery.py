"""
Webhook Delivery Handler

Signs and POSTs one event to one tenant endpoint, recording every attempt
on the WebhookDelivery ledger before returning or raising.

Retry scheduling belongs to the job queue: a failed attempt raises so the
worker re-enqueues it. next_retry_at is written for dashboards and alerting
only and is never read back.
"""
import time
from datetime import datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.config import settings
from eventpipe.database import run_with_service_context
from eventpipe.logging_config import get_logger
from eventpipe.models.base import utcnow
from eventpipe.models.webhook import WebhookDelivery, WebhookEndpoint
from eventpipe.routes.metrics import track_endpoint_exhausted, track_webhook_delivery
from eventpipe.sentry_config import capture_message
from eventpipe.services.webhook_signing import serialize_payload, sign_webhook_payload


MAX_ATTEMPTS = settings.WEBHOOK_MAX_ATTEMPTS

# Indexed by attempt_number - 1; the last entry repeats.
RETRY_DELAYS = [
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
    timedelta(hours=24),
]

ENDPOINT_MISSING_ERROR = "Endpoint not found or secret missing"
ENDPOINT_DISABLED_ERROR = "Endpoint disabled"
INVALID_URL_ERROR = "Invalid endpoint URL"
TIMEOUT_ERROR = "Request timeout"


class WebhookDeliveryError(Exception):
    """Retryable transport or HTTP failure."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class WebhookDeliveryJob(BaseModel):
    """Payload of a webhook-delivery job."""
    delivery_id: str
    endpoint_id: str
    org_id: str
    url: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    attempt_number: int = 1


def calculate_next_retry(attempt_number: int, now: datetime | None = None) -> datetime | None:
    """Informational retry time for a failed attempt, None once attempts are exhausted."""
    if attempt_number >= MAX_ATTEMPTS:
        return None
    index = min(max(attempt_number - 1, 0), len(RETRY_DELAYS) - 1)
    return (now or utcnow()) + RETRY_DELAYS[index]


def failure_state(attempt_number: int, now: datetime) -> dict[str, Any]:
    """Ledger columns for a failed attempt: pending retry or terminal failure."""
    if attempt_number >= MAX_ATTEMPTS:
        return {"delivered_at": None, "next_retry_at": None, "failed_at": now}
    return {
        "delivered_at": None,
        "next_retry_at": calculate_next_retry(attempt_number, now),
        "failed_at": None,
    }


async def update_delivery_record(delivery_id: str, **values) -> None:
    """Apply column updates to one delivery row."""
    async def _update(session: AsyncSession):
        await session.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(**values)
        )

    await run_with_service_context("WebhookDelivery.updateDeliveryRecord", _update)


async def get_endpoint(endpoint_id: str) -> WebhookEndpoint | None:
    async def _fetch(session: AsyncSession):
        result = await session.execute(
            select(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id)
        )
        return result.scalar_one_or_none()

    return await run_with_service_context("WebhookDelivery.fetchEndpoint", _fetch)


async def _record_configuration_error(job: WebhookDeliveryJob, error: str, log) -> dict:
    await update_delivery_record(
        job.delivery_id,
        attempt_number=job.attempt_number,
        error=error,
        failed_at=utcnow(),
        next_retry_at=None,
        delivered_at=None,
    )
    track_webhook_delivery("config_error")
    log.error("delivery_configuration_error", error=error)
    return {"success": False, "error": error}


def _report_exhausted(job: WebhookDeliveryJob, log) -> None:
    # TODO: auto-disable endpoints after a streak of exhausted deliveries
    track_endpoint_exhausted(job.endpoint_id)
    log.warning("webhook_endpoint_retries_exhausted", max_attempts=MAX_ATTEMPTS)
    capture_message(
        "Webhook endpoint exhausted all delivery attempts",
        level="warning",
        endpoint_id=job.endpoint_id,
        org_id=job.org_id,
    )


async def deliver_webhook(job: WebhookDeliveryJob, http_client: httpx.AsyncClient) -> dict:
    """
    Deliver one webhook attempt.

    Returns {"success": True, "status": ...} on 2xx and {"success": False, "error": ...}
    for configuration errors (missing or disabled endpoint, malformed URL), which are
    terminal and must not be retried.

    Raises:
        WebhookDeliveryError: non-2xx response, timeout or network failure
    """
    log = get_logger(
        component="WebhookDelivery",
        delivery_id=job.delivery_id,
        endpoint_id=job.endpoint_id,
        event_type=job.event_type,
        attempt=job.attempt_number,
    )
    log.info("delivery_started")

    endpoint = await get_endpoint(job.endpoint_id)
    if endpoint is None or not endpoint.secret:
        return await _record_configuration_error(job, ENDPOINT_MISSING_ERROR, log)
    if not endpoint.enabled:
        return await _record_configuration_error(job, ENDPOINT_DISABLED_ERROR, log)

    timestamp = int(time.time())
    body = serialize_payload(job.payload)
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Id": job.event_id,
        "X-Webhook-Timestamp": str(timestamp),
        "X-Webhook-Signature": sign_webhook_payload(body, endpoint.secret, timestamp),
        "User-Agent": settings.WEBHOOK_USER_AGENT,
    }

    try:
        response = await http_client.post(
            job.url,
            content=body.encode("utf-8"),
            headers=headers,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    except httpx.InvalidURL as exc:
        # Not an httpx.HTTPError; the same URL fails on every attempt
        return await _record_configuration_error(job, f"{INVALID_URL_ERROR}: {exc}", log)
    except httpx.HTTPError as exc:
        error = TIMEOUT_ERROR if isinstance(exc, httpx.TimeoutException) else (str(exc) or type(exc).__name__)
        now = utcnow()
        await update_delivery_record(
            job.delivery_id,
            attempt_number=job.attempt_number,
            error=error,
            **failure_state(job.attempt_number, now),
        )
        track_webhook_delivery("failed")
        log.error("delivery_request_failed", error=error)
        if job.attempt_number >= MAX_ATTEMPTS:
            _report_exhausted(job, log)
        raise WebhookDeliveryError(error) from exc

    now = utcnow()
    ledger = {
        "attempt_number": job.attempt_number,
        "response_status": response.status_code,
        "response_body": response.text[: settings.WEBHOOK_RESPONSE_BODY_LIMIT],
        "response_headers": dict(response.headers.items()),
    }

    if response.is_success:
        await update_delivery_record(
            job.delivery_id,
            **ledger,
            error=None,
            delivered_at=now,
            failed_at=None,
            next_retry_at=None,
        )
        track_webhook_delivery("delivered")
        log.info("delivery_succeeded", status=response.status_code)
        return {"success": True, "status": response.status_code}

    await update_delivery_record(
        job.delivery_id,
        **ledger,
        error=f"HTTP {response.status_code}",
        **failure_state(job.attempt_number, now),
    )
    track_webhook_delivery("failed")
    log.error("delivery_rejected", status=response.status_code)
    if job.attempt_number >= MAX_ATTEMPTS:
        _report_exhausted(job, log)
    raise WebhookDeliveryError(f"Webhook returned {response.status_code}", status=response.status_code)
