import fnmatch
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_eventpipe")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_eventpipe")
os.environ.setdefault("WORKER_METRICS_PORT", "0")

from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from eventpipe import database
from eventpipe.database import run_with_service_context
from eventpipe.models.base import Base
from eventpipe.models.billing import Customer, Subscription
from eventpipe.models.incoming_event import IncomingWebhookEvent
from eventpipe.models.notification import Notification  # noqa: F401
from eventpipe.models.organisation import Organisation
from eventpipe.models.usage import MetricType, UsageRecord
from eventpipe.models.user import User, UserRole
from eventpipe.models.webhook import WebhookDelivery, WebhookEndpoint
from eventpipe.services.incoming_webhooks import IncomingWebhookJob


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
async def db(monkeypatch):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)
    yield factory
    await engine.dispose()


class FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self.client = client
        self.commands: list[tuple[str, tuple]] = []

    def incr(self, key):
        self.commands.append(("incr", (key,)))
        return self

    def expire(self, key, seconds):
        self.commands.append(("expire", (key, seconds)))
        return self

    async def execute(self):
        if self.client.fail:
            raise ConnectionError("redis unavailable")
        results = []
        for name, args in self.commands:
            results.append(await getattr(self.client, name)(*args))
        self.commands = []
        return results


class FakeRedis:
    """In-memory stand-in for the counter store (decode_responses=True)."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self.values):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = str(value)

    async def incr(self, key):
        self.values[key] = str(int(self.values.get(key, "0")) + 1)
        return int(self.values[key])

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    def pipeline(self):
        return FakePipeline(self)


@pytest.fixture
def fake_redis():
    return FakeRedis()


class RecordingQueue:
    """enqueue() replacement that remembers jobs and honours job_id dedupe."""

    def __init__(self):
        self.jobs: list[dict[str, Any]] = []

    async def __call__(self, queue_name, payload, *, job_id=None, defer_by=None):
        if job_id is not None and any(job["job_id"] == job_id for job in self.jobs):
            return None
        job_id = job_id or f"job-{len(self.jobs) + 1}"
        self.jobs.append({"queue": queue_name, "payload": payload, "job_id": job_id})
        return job_id

    def on(self, queue_name: str) -> list[dict[str, Any]]:
        return [job for job in self.jobs if job["queue"] == queue_name]


@pytest.fixture
def queue():
    return RecordingQueue()


class Seed:
    """Writes fixtures through the same service-context path as the pipeline."""

    async def _add(self, label: str, instance):
        async def _create(session):
            session.add(instance)
            await session.flush()
            return instance

        return await run_with_service_context(label, _create)

    async def org(self, name: str = "Acme Corp") -> Organisation:
        return await self._add("tests.org", Organisation(name=name))

    async def user(self, org_id: str, email: str, role: UserRole = UserRole.MEMBER) -> User:
        return await self._add("tests.user", User(email=email, name=email.split("@")[0], org_id=org_id, role=role))

    async def endpoint(
        self,
        org_id: str,
        url: str = "https://hooks.example.com/receive",
        secret: str = "whsec_endpoint_secret",
        events: list[str] | None = None,
        enabled: bool = True,
    ) -> WebhookEndpoint:
        return await self._add("tests.endpoint", WebhookEndpoint(
            org_id=org_id,
            url=url,
            secret=secret,
            events=events if events is not None else ["*"],
            enabled=enabled,
        ))

    async def delivery(self, org_id: str, endpoint_id: str, event_id: str = "evt_1",
                       event_type: str = "project.created", payload: dict | None = None) -> WebhookDelivery:
        return await self._add("tests.delivery", WebhookDelivery(
            org_id=org_id,
            endpoint_id=endpoint_id,
            event_id=event_id,
            event_type=event_type,
            payload=payload or {"id": event_id, "type": event_type, "data": {"name": "Apollo"}},
            attempt_number=1,
        ))

    async def customer(self, org_id: str, stripe_customer_id: str, email: str | None = None) -> Customer:
        return await self._add("tests.customer", Customer(
            org_id=org_id, stripe_customer_id=stripe_customer_id, email=email,
        ))

    async def subscription(self, customer: Customer, stripe_subscription_id: str,
                           status: str = "active", plan: str = "pro") -> Subscription:
        return await self._add("tests.subscription", Subscription(
            org_id=customer.org_id,
            customer_id=customer.id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_price_id="price_pro",
            plan=plan,
            status=status,
        ))

    async def usage(self, org_id: str, period_start: datetime, quantity: int,
                    metric_type: str = MetricType.API_CALLS.value, reported: bool = False) -> UsageRecord:
        return await self._add("tests.usage", UsageRecord(
            org_id=org_id,
            metric_type=metric_type,
            quantity=quantity,
            period_start=period_start,
            period_end=period_start,
            reported_to_stripe=reported,
        ))

    async def incoming_event(self, event_type: str, obj: dict, *, event_id: str = "evt_test_1",
                             provider: str = "stripe", verified: bool = True) -> IncomingWebhookJob:
        record = await self._add("tests.incomingEvent", IncomingWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload={"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}},
            verified=verified,
        ))
        return IncomingWebhookJob(
            event_record_id=record.id,
            provider=provider,
            event_type=event_type,
            event_id=event_id,
        )

    async def get(self, model, id_):
        return await run_with_service_context("tests.get", lambda session: session.get(model, id_))

    async def all(self, model, *where):
        async def _all(session):
            result = await session.execute(select(model).where(*where))
            return list(result.scalars().all())

        return await run_with_service_context("tests.all", _all)


@pytest.fixture
def seed():
    return Seed()
