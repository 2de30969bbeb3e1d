from datetime import datetime, timedelta, timezone

import httpx
import pytest

from eventpipe.models.webhook import WebhookDelivery
from eventpipe.services import webhook_delivery
from eventpipe.services.webhook_delivery import (
    ENDPOINT_DISABLED_ERROR,
    ENDPOINT_MISSING_ERROR,
    INVALID_URL_ERROR,
    TIMEOUT_ERROR,
    WebhookDeliveryError,
    WebhookDeliveryJob,
    calculate_next_retry,
    deliver_webhook,
)
from eventpipe.services.webhook_signing import verify_webhook_signature

from conftest import as_utc


SECRET = "whsec_endpoint_secret"


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def setup_delivery(seed, *, enabled=True, attempt_number=1):
    org = await seed.org()
    endpoint = await seed.endpoint(org.id, secret=SECRET, enabled=enabled)
    delivery = await seed.delivery(org.id, endpoint.id)
    job = WebhookDeliveryJob(
        delivery_id=delivery.id,
        endpoint_id=endpoint.id,
        org_id=org.id,
        url=endpoint.url,
        event_id=delivery.event_id,
        event_type=delivery.event_type,
        payload=delivery.payload,
        attempt_number=attempt_number,
    )
    return job


async def test_successful_delivery_is_signed_and_recorded(seed):
    job = await setup_delivery(seed)
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(200, text="ok", headers={"X-Receiver": "1"})

    async with make_client(handler) as client:
        result = await deliver_webhook(job, client)

    assert result == {"success": True, "status": 200}

    request = captured["request"]
    body = request.content.decode()
    assert request.method == "POST"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Webhook-Id"] == "evt_1"
    assert request.headers["X-Webhook-Signature"].startswith(f"t={request.headers['X-Webhook-Timestamp']},v1=")
    assert verify_webhook_signature(body, request.headers["X-Webhook-Signature"], SECRET)
    assert body == '{"id":"evt_1","type":"project.created","data":{"name":"Apollo"}}'

    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.response_status == 200
    assert delivery.response_body == "ok"
    assert delivery.response_headers["x-receiver"] == "1"
    assert delivery.delivered_at is not None
    assert delivery.next_retry_at is None
    assert delivery.failed_at is None
    assert delivery.error is None
    assert delivery.status == "delivered"


async def test_first_failed_attempt_schedules_informational_retry(seed):
    job = await setup_delivery(seed)
    before = datetime.now(timezone.utc)

    async with make_client(lambda request: httpx.Response(500, text="boom")) as client:
        with pytest.raises(WebhookDeliveryError, match="Webhook returned 500"):
            await deliver_webhook(job, client)

    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.attempt_number == 1
    assert delivery.response_status == 500
    assert delivery.error == "HTTP 500"
    assert delivery.delivered_at is None
    assert delivery.failed_at is None
    next_retry = as_utc(delivery.next_retry_at)
    assert before + timedelta(minutes=1) <= next_retry <= datetime.now(timezone.utc) + timedelta(minutes=1)
    assert delivery.status == "pending"


async def test_final_failed_attempt_is_terminal(seed):
    job = await setup_delivery(seed, attempt_number=5)

    async with make_client(lambda request: httpx.Response(500)) as client:
        with pytest.raises(WebhookDeliveryError) as exc_info:
            await deliver_webhook(job, client)

    assert exc_info.value.status == 500
    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.attempt_number == 5
    assert delivery.response_status == 500
    assert delivery.error == "HTTP 500"
    assert delivery.failed_at is not None
    assert delivery.next_retry_at is None
    assert delivery.delivered_at is None
    assert delivery.status == "failed"


async def test_timeout_is_recorded_and_raised(seed):
    job = await setup_delivery(seed, attempt_number=2)

    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with make_client(handler) as client:
        with pytest.raises(WebhookDeliveryError, match=TIMEOUT_ERROR):
            await deliver_webhook(job, client)

    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.error == TIMEOUT_ERROR
    assert delivery.attempt_number == 2
    assert delivery.response_status is None
    assert delivery.next_retry_at is not None


async def test_network_error_is_recorded_and_raised(seed):
    job = await setup_delivery(seed)

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler) as client:
        with pytest.raises(WebhookDeliveryError, match="connection refused"):
            await deliver_webhook(job, client)

    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.error == "connection refused"


async def test_missing_endpoint_is_a_terminal_configuration_error(seed):
    job = await setup_delivery(seed)
    job.endpoint_id = "00000000-0000-0000-0000-000000000000"
    calls = []

    async with make_client(lambda request: calls.append(request) or httpx.Response(200)) as client:
        result = await deliver_webhook(job, client)

    assert result == {"success": False, "error": ENDPOINT_MISSING_ERROR}
    assert calls == []
    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.error == ENDPOINT_MISSING_ERROR
    assert delivery.failed_at is not None
    assert delivery.next_retry_at is None


async def test_disabled_endpoint_is_a_terminal_configuration_error(seed):
    job = await setup_delivery(seed, enabled=False)
    calls = []

    async with make_client(lambda request: calls.append(request) or httpx.Response(200)) as client:
        result = await deliver_webhook(job, client)

    assert result == {"success": False, "error": ENDPOINT_DISABLED_ERROR}
    assert calls == []


async def test_malformed_url_is_a_terminal_configuration_error(seed):
    job = await setup_delivery(seed)
    job.url = "http://[::1/hook"
    calls = []

    async with make_client(lambda request: calls.append(request) or httpx.Response(200)) as client:
        result = await deliver_webhook(job, client)

    assert result["success"] is False
    assert result["error"].startswith(INVALID_URL_ERROR)
    assert calls == []
    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.error.startswith(INVALID_URL_ERROR)
    assert delivery.failed_at is not None
    assert delivery.next_retry_at is None
    assert delivery.status == "failed"


async def test_response_body_is_truncated(seed, monkeypatch):
    monkeypatch.setattr(webhook_delivery.settings, "WEBHOOK_RESPONSE_BODY_LIMIT", 100)
    job = await setup_delivery(seed)

    async with make_client(lambda request: httpx.Response(202, text="x" * 500)) as client:
        await deliver_webhook(job, client)

    delivery = await seed.get(WebhookDelivery, job.delivery_id)
    assert delivery.response_body == "x" * 100
    assert delivery.response_status == 202


def test_backoff_table():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert calculate_next_retry(1, now) == now + timedelta(minutes=1)
    assert calculate_next_retry(2, now) == now + timedelta(minutes=5)
    assert calculate_next_retry(3, now) == now + timedelta(minutes=30)
    assert calculate_next_retry(4, now) == now + timedelta(hours=2)
    assert calculate_next_retry(5, now) is None
