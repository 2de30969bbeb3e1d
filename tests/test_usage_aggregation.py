from datetime import datetime, timezone

import pytest

from eventpipe.models.usage import MetricType, UsageRecord
from eventpipe.services import usage_aggregation
from eventpipe.services.usage_aggregation import aggregate_usage, snapshot_active_seats
from eventpipe.services.usage_tracking import (
    InvalidHourBucket,
    get_hour_bucket,
    parse_hour_bucket,
    parse_usage_key,
    track_api_call,
    usage_key,
)

from conftest import as_utc


BUCKET = "2026-03-01-14"
PERIOD_START = datetime(2026, 3, 1, 14, tzinfo=timezone.utc)


async def api_call_records(seed, org_id=None):
    where = [UsageRecord.metric_type == MetricType.API_CALLS.value]
    if org_id is not None:
        where.append(UsageRecord.org_id == org_id)
    return await seed.all(UsageRecord, *where)


def test_hour_bucket_helpers():
    moment = datetime(2026, 3, 1, 14, 59, 59, tzinfo=timezone.utc)
    assert get_hour_bucket(moment) == BUCKET
    assert parse_hour_bucket(BUCKET) == PERIOD_START
    assert usage_key("org-1", BUCKET) == "usage:api_calls:org-1:2026-03-01-14"
    assert parse_usage_key("usage:api_calls:org-1:2026-03-01-14") == "org-1"
    assert parse_usage_key("usage:api_calls::2026-03-01-14") is None
    assert parse_usage_key("something:else") is None

    with pytest.raises(InvalidHourBucket):
        parse_hour_bucket("2026-03-01")


async def test_track_api_call_counts_per_org_and_hour(fake_redis):
    moment = datetime(2026, 3, 1, 14, 30, tzinfo=timezone.utc)

    await track_api_call(fake_redis, "org-1", moment)
    await track_api_call(fake_redis, "org-1", moment)
    await track_api_call(fake_redis, "org-2", moment)

    assert fake_redis.values[usage_key("org-1", BUCKET)] == "2"
    assert fake_redis.values[usage_key("org-2", BUCKET)] == "1"
    assert fake_redis.ttls[usage_key("org-1", BUCKET)] == 7 * 24 * 60 * 60


async def test_track_api_call_swallows_counter_store_errors(fake_redis):
    fake_redis.fail = True

    await track_api_call(fake_redis, "org-1")

    assert fake_redis.values == {}


async def test_aggregation_flushes_counters_into_usage_records(seed, fake_redis):
    org_a = await seed.org("Org A")
    org_b = await seed.org("Org B")
    await fake_redis.set(usage_key(org_a.id, BUCKET), 5)
    await fake_redis.set(usage_key(org_b.id, BUCKET), 7)
    await fake_redis.set(usage_key(org_a.id, "2026-03-01-15"), 3)

    result = await aggregate_usage(fake_redis, BUCKET)

    assert result == {
        "success": True,
        "hourBucket": BUCKET,
        "processedKeys": 2,
        "aggregatedKeys": 2,
        "skippedKeys": 0,
        "failedKeys": 0,
    }
    records = {r.org_id: r for r in await api_call_records(seed)}
    assert records[org_a.id].quantity == 5
    assert records[org_b.id].quantity == 7
    assert as_utc(records[org_a.id].period_start) == PERIOD_START
    assert as_utc(records[org_a.id].period_end) == datetime(2026, 3, 1, 15, tzinfo=timezone.utc)
    assert records[org_a.id].reported_to_stripe is False

    # Flushed counters are gone, other buckets are untouched
    assert usage_key(org_a.id, BUCKET) not in fake_redis.values
    assert fake_redis.values[usage_key(org_a.id, "2026-03-01-15")] == "3"


async def test_rerunning_a_bucket_keeps_one_row_with_latest_value(seed, fake_redis):
    org = await seed.org()
    await fake_redis.set(usage_key(org.id, BUCKET), 5)
    await aggregate_usage(fake_redis, BUCKET)

    await fake_redis.set(usage_key(org.id, BUCKET), 9)
    await aggregate_usage(fake_redis, BUCKET)

    [record] = await api_call_records(seed, org.id)
    assert record.quantity == 9


async def test_one_failing_key_does_not_stop_the_batch(seed, fake_redis, monkeypatch):
    org_a = await seed.org("Org A")
    org_b = await seed.org("Org B")
    await fake_redis.set(usage_key(org_a.id, BUCKET), 5)
    await fake_redis.set(usage_key(org_b.id, BUCKET), 7)

    original = usage_aggregation.upsert_usage_record

    async def flaky_upsert(session, org_id, *args):
        if org_id == org_a.id:
            raise RuntimeError("database write failed")
        return await original(session, org_id, *args)

    monkeypatch.setattr(usage_aggregation, "upsert_usage_record", flaky_upsert)

    result = await aggregate_usage(fake_redis, BUCKET)

    assert result["processedKeys"] == 2
    assert result["aggregatedKeys"] == 1
    assert result["failedKeys"] == 1
    assert [r.org_id for r in await api_call_records(seed)] == [org_b.id]
    # The failed counter stays for the next run
    assert fake_redis.values[usage_key(org_a.id, BUCKET)] == "5"
    assert usage_key(org_b.id, BUCKET) not in fake_redis.values


async def test_zero_and_malformed_counters_are_skipped(seed, fake_redis):
    org = await seed.org()
    await fake_redis.set(usage_key(org.id, BUCKET), 0)
    await fake_redis.set(usage_key("org-garbage", BUCKET), "not-a-number")
    await fake_redis.set(f"usage:api_calls::{BUCKET}", 4)

    result = await aggregate_usage(fake_redis, BUCKET)

    assert result["processedKeys"] == 3
    assert result["skippedKeys"] == 3
    assert result["aggregatedKeys"] == 0
    assert await api_call_records(seed) == []


async def test_invalid_bucket_fails_the_job(fake_redis):
    with pytest.raises(InvalidHourBucket):
        await aggregate_usage(fake_redis, "yesterday")


async def test_active_seat_snapshot_counts_members_per_org(seed):
    org_a = await seed.org("Org A")
    org_b = await seed.org("Org B")
    for i in range(3):
        await seed.user(org_a.id, f"user{i}@a.example.com")

    result = await snapshot_active_seats("2026-03-01")

    assert result == {"success": True, "date": "2026-03-01", "processedOrgs": 2, "failedOrgs": 0}
    records = {
        r.org_id: r
        for r in await seed.all(UsageRecord, UsageRecord.metric_type == MetricType.ACTIVE_SEATS.value)
    }
    assert records[org_a.id].quantity == 3
    assert records[org_b.id].quantity == 0
    assert as_utc(records[org_a.id].period_start) == datetime(2026, 3, 1, tzinfo=timezone.utc)


async def test_active_seat_snapshot_rerun_updates_in_place(seed):
    org = await seed.org()
    await seed.user(org.id, "first@acme.com")
    await snapshot_active_seats("2026-03-01")

    await seed.user(org.id, "second@acme.com")
    await snapshot_active_seats("2026-03-01")

    [record] = await seed.all(
        UsageRecord,
        UsageRecord.org_id == org.id,
        UsageRecord.metric_type == MetricType.ACTIVE_SEATS.value,
    )
    assert record.quantity == 2
