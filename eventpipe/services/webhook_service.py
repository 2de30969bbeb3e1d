"""
Webhook Service

Endpoint lifecycle and outbound event dispatch. Dispatch only records a
delivery and enqueues a job per subscribed endpoint; the worker does the
actual HTTP call (see webhook_delivery).
"""
import secrets
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.config import settings
from eventpipe.database import run_with_service_context
from eventpipe.logging_config import get_logger
from eventpipe.models.webhook import WebhookDelivery, WebhookEndpoint
from eventpipe.queue import WEBHOOK_DELIVERY_QUEUE, enqueue
from eventpipe.services.webhook_signing import generate_webhook_secret

logger = get_logger(component="WebhookService")

EnqueueFn = Callable[..., Awaitable[str | None]]

TEST_EVENT_TYPE = "test.ping"


class EndpointLimitExceeded(Exception):
    pass


class EndpointNotFound(Exception):
    pass


def mask_secret(secret: str) -> str:
    """Show only the last four characters of a secret."""
    if len(secret) <= 4:
        return "****"
    return f"{'*' * 8}{secret[-4:]}"


def generate_event_id() -> str:
    return f"evt_{secrets.token_hex(16)}"


async def create_endpoint(
    org_id: str,
    url: str,
    events: list[str],
    description: str | None = None,
) -> tuple[WebhookEndpoint, str]:
    """
    Create an enabled endpoint with a freshly generated secret.

    Returns:
        (endpoint, plaintext secret) - the only time the secret is returned in full

    Raises:
        EndpointLimitExceeded: org already has MAX_ENDPOINTS_PER_ORG endpoints
    """
    secret = generate_webhook_secret()

    async def _create(session: AsyncSession):
        count = await session.scalar(
            select(func.count()).select_from(WebhookEndpoint).where(WebhookEndpoint.org_id == org_id)
        )
        if count >= settings.MAX_ENDPOINTS_PER_ORG:
            raise EndpointLimitExceeded(
                f"Maximum of {settings.MAX_ENDPOINTS_PER_ORG} webhook endpoints per organisation"
            )
        endpoint = WebhookEndpoint(
            org_id=org_id,
            url=url,
            description=description,
            secret=secret,
            events=list(events),
            enabled=True,
        )
        session.add(endpoint)
        await session.flush()
        return endpoint

    endpoint = await run_with_service_context("WebhookService.createEndpoint", _create)
    logger.info("endpoint_created", endpoint_id=endpoint.id, org_id=org_id)
    return endpoint, secret


async def _get_endpoint_for_org(session: AsyncSession, org_id: str, endpoint_id: str) -> WebhookEndpoint:
    result = await session.execute(
        select(WebhookEndpoint).where(
            WebhookEndpoint.id == endpoint_id,
            WebhookEndpoint.org_id == org_id,
        )
    )
    endpoint = result.scalar_one_or_none()
    if endpoint is None:
        raise EndpointNotFound(f"Webhook endpoint not found: {endpoint_id}")
    return endpoint


async def rotate_secret(org_id: str, endpoint_id: str) -> str:
    """Replace the endpoint secret and return the new plaintext value."""
    secret = generate_webhook_secret()

    async def _rotate(session: AsyncSession):
        endpoint = await _get_endpoint_for_org(session, org_id, endpoint_id)
        endpoint.secret = secret

    await run_with_service_context("WebhookService.rotateSecret", _rotate)
    logger.info("endpoint_secret_rotated", endpoint_id=endpoint_id, org_id=org_id)
    return secret


async def disable_endpoint(org_id: str, endpoint_id: str) -> None:
    """Soft-disable an endpoint; its delivery history is kept."""
    async def _disable(session: AsyncSession):
        endpoint = await _get_endpoint_for_org(session, org_id, endpoint_id)
        endpoint.enabled = False

    await run_with_service_context("WebhookService.disableEndpoint", _disable)
    logger.info("endpoint_disabled", endpoint_id=endpoint_id, org_id=org_id)


async def dispatch_event(
    org_id: str,
    event_type: str,
    data: dict[str, Any],
    *,
    enqueue_fn: EnqueueFn = enqueue,
    endpoint_ids: list[str] | None = None,
) -> list[str]:
    """
    Fan an event out to every enabled endpoint subscribed to it.

    Failures are logged and swallowed so the calling operation never breaks.

    Returns:
        Ids of the delivery rows created
    """
    event_id = generate_event_id()
    payload = {
        "id": event_id,
        "type": event_type,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "org_id": org_id,
        "data": data,
    }

    async def _create_deliveries(session: AsyncSession):
        stmt = select(WebhookEndpoint).where(
            WebhookEndpoint.org_id == org_id,
            WebhookEndpoint.enabled.is_(True),
        )
        if endpoint_ids is not None:
            stmt = stmt.where(WebhookEndpoint.id.in_(endpoint_ids))
        endpoints = [
            endpoint for endpoint in (await session.execute(stmt)).scalars()
            if endpoint_ids is not None or endpoint.subscribes_to(event_type)
        ]

        created = []
        for endpoint in endpoints:
            delivery = WebhookDelivery(
                org_id=org_id,
                endpoint_id=endpoint.id,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                attempt_number=1,
            )
            session.add(delivery)
            created.append((delivery, endpoint.url))
        await session.flush()
        return [(delivery.id, delivery.endpoint_id, url) for delivery, url in created]

    try:
        deliveries = await run_with_service_context("WebhookService.createDeliveries", _create_deliveries)
        if not deliveries:
            logger.debug("no_subscribed_endpoints", org_id=org_id, event_type=event_type)
            return []

        # The secret stays in the database; the worker fetches it per attempt.
        for delivery_id, endpoint_id, url in deliveries:
            await enqueue_fn(
                WEBHOOK_DELIVERY_QUEUE,
                {
                    "delivery_id": delivery_id,
                    "endpoint_id": endpoint_id,
                    "org_id": org_id,
                    "url": url,
                    "event_id": event_id,
                    "event_type": event_type,
                    "payload": payload,
                    "attempt_number": 1,
                },
            )

        logger.info("event_dispatched", org_id=org_id, event_type=event_type, endpoints=len(deliveries))
        return [delivery_id for delivery_id, _, _ in deliveries]
    except Exception:
        logger.error("event_dispatch_failed", org_id=org_id, event_type=event_type, exc_info=True)
        return []


async def send_test_event(org_id: str, endpoint_id: str, *, enqueue_fn: EnqueueFn = enqueue) -> list[str]:
    """Dispatch a test.ping event to a single enabled endpoint."""
    async def _check(session: AsyncSession):
        endpoint = await _get_endpoint_for_org(session, org_id, endpoint_id)
        return endpoint.enabled

    if not await run_with_service_context("WebhookService.testEndpoint", _check):
        raise ValueError("Cannot test a disabled webhook endpoint")

    return await dispatch_event(
        org_id,
        TEST_EVENT_TYPE,
        {"message": "This is a test webhook event", "endpoint_id": endpoint_id},
        enqueue_fn=enqueue_fn,
        endpoint_ids=[endpoint_id],
    )
