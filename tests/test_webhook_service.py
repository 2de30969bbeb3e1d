import pytest

from eventpipe.models.webhook import WebhookDelivery, WebhookEndpoint
from eventpipe.queue import WEBHOOK_DELIVERY_QUEUE
from eventpipe.services import webhook_service
from eventpipe.services.webhook_service import (
    EndpointLimitExceeded,
    EndpointNotFound,
    create_endpoint,
    disable_endpoint,
    dispatch_event,
    mask_secret,
    rotate_secret,
    send_test_event,
)


async def test_create_endpoint_returns_plaintext_secret_once(seed):
    org = await seed.org()

    endpoint, secret = await create_endpoint(org.id, "https://hooks.example.com/a", ["project.created"], "Primary")

    assert secret.startswith("whsec_")
    stored = await seed.get(WebhookEndpoint, endpoint.id)
    assert stored.secret == secret
    assert stored.enabled is True
    assert stored.events == ["project.created"]
    assert stored.description == "Primary"


async def test_endpoint_limit_per_org(seed, monkeypatch):
    monkeypatch.setattr(webhook_service.settings, "MAX_ENDPOINTS_PER_ORG", 1)
    org = await seed.org()
    other = await seed.org("Beta Inc")

    await create_endpoint(org.id, "https://hooks.example.com/a", ["*"])
    with pytest.raises(EndpointLimitExceeded):
        await create_endpoint(org.id, "https://hooks.example.com/b", ["*"])

    # Limit is per organisation
    await create_endpoint(other.id, "https://hooks.example.com/c", ["*"])


async def test_rotate_and_disable(seed):
    org = await seed.org()
    endpoint = await seed.endpoint(org.id, secret="whsec_old")

    new_secret = await rotate_secret(org.id, endpoint.id)
    assert new_secret != "whsec_old"
    assert (await seed.get(WebhookEndpoint, endpoint.id)).secret == new_secret

    await disable_endpoint(org.id, endpoint.id)
    assert (await seed.get(WebhookEndpoint, endpoint.id)).enabled is False


async def test_endpoints_are_scoped_to_their_org(seed):
    org = await seed.org()
    intruder = await seed.org("Intruder Ltd")
    endpoint = await seed.endpoint(org.id)

    with pytest.raises(EndpointNotFound):
        await rotate_secret(intruder.id, endpoint.id)
    with pytest.raises(EndpointNotFound):
        await disable_endpoint(intruder.id, endpoint.id)


async def test_dispatch_fans_out_to_subscribed_enabled_endpoints(seed, queue):
    org = await seed.org()
    exact = await seed.endpoint(org.id, url="https://a.example.com", events=["project.created"])
    wildcard = await seed.endpoint(org.id, url="https://b.example.com", events=["*"])
    await seed.endpoint(org.id, url="https://c.example.com", events=["invoice.created"])
    await seed.endpoint(org.id, url="https://d.example.com", events=["*"], enabled=False)

    delivery_ids = await dispatch_event(org.id, "project.created", {"name": "Apollo"}, enqueue_fn=queue)

    assert len(delivery_ids) == 2
    jobs = queue.on(WEBHOOK_DELIVERY_QUEUE)
    assert {job["payload"]["endpoint_id"] for job in jobs} == {exact.id, wildcard.id}
    assert {job["payload"]["url"] for job in jobs} == {"https://a.example.com", "https://b.example.com"}

    payload = jobs[0]["payload"]
    assert payload["attempt_number"] == 1
    assert "secret" not in payload
    assert payload["event_id"].startswith("evt_")
    assert payload["payload"]["type"] == "project.created"
    assert payload["payload"]["org_id"] == org.id
    assert payload["payload"]["data"] == {"name": "Apollo"}
    # One event id shared across the fan-out
    assert len({job["payload"]["event_id"] for job in jobs}) == 1

    deliveries = await seed.all(WebhookDelivery, WebhookDelivery.org_id == org.id)
    assert sorted(d.id for d in deliveries) == sorted(delivery_ids)
    assert all(d.attempt_number == 1 and d.delivered_at is None for d in deliveries)


async def test_dispatch_without_subscribers_enqueues_nothing(seed, queue):
    org = await seed.org()
    await seed.endpoint(org.id, events=["invoice.created"])

    assert await dispatch_event(org.id, "project.created", {}, enqueue_fn=queue) == []
    assert queue.jobs == []


async def test_dispatch_failures_never_reach_the_caller(seed):
    org = await seed.org()
    await seed.endpoint(org.id)

    async def broken_enqueue(*args, **kwargs):
        raise ConnectionError("redis down")

    assert await dispatch_event(org.id, "project.created", {}, enqueue_fn=broken_enqueue) == []


async def test_send_test_event_targets_one_endpoint(seed, queue):
    org = await seed.org()
    endpoint = await seed.endpoint(org.id, events=["project.created"])
    await seed.endpoint(org.id, events=["*"])

    delivery_ids = await send_test_event(org.id, endpoint.id, enqueue_fn=queue)

    assert len(delivery_ids) == 1
    [job] = queue.on(WEBHOOK_DELIVERY_QUEUE)
    assert job["payload"]["endpoint_id"] == endpoint.id
    assert job["payload"]["event_type"] == "test.ping"


async def test_send_test_event_rejects_disabled_endpoint(seed, queue):
    org = await seed.org()
    endpoint = await seed.endpoint(org.id, enabled=False)

    with pytest.raises(ValueError):
        await send_test_event(org.id, endpoint.id, enqueue_fn=queue)
    assert queue.jobs == []


def test_mask_secret():
    assert mask_secret("whsec_abcdefgh1234") == "********1234"
    assert mask_secret("abc") == "****"
