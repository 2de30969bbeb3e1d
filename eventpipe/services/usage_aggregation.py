"""
Usage Aggregation

Hourly: flush Redis API-call counters into UsageRecord rows.
Daily: snapshot active seats per organisation.

Both upsert by (org_id, metric_type, period_start) so reruns converge on
one row. Per-key and per-org failures are logged and skipped.

Known risk: the counter is read, written to the database and then deleted
with no transaction spanning Redis and the database. A crash before the
delete leaves the counter for a later run, which replaces the row with the
same or a larger value. Increments that land between the read and the
delete are lost.
"""
import time
from datetime import date, datetime, timedelta, timezone

import redis.asyncio as redis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.database import run_with_service_context
from eventpipe.logging_config import get_logger
from eventpipe.models.base import utcnow
from eventpipe.models.organisation import Organisation
from eventpipe.models.usage import MetricType, UsageRecord
from eventpipe.models.user import User
from eventpipe.routes.metrics import track_usage_record
from eventpipe.services.usage_tracking import (
    get_hour_bucket,
    parse_hour_bucket,
    parse_usage_key,
    usage_key_pattern,
)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """(00:00:00, 23:59:59.999999) of a UTC day."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


def parse_date(value: str | None, default: date) -> date:
    """YYYY-MM-DD or default."""
    if not value:
        return default
    return date.fromisoformat(value)


async def upsert_usage_record(
    session: AsyncSession,
    org_id: str,
    metric_type: str,
    quantity: int,
    period_start: datetime,
    period_end: datetime,
) -> None:
    """Set the quantity of the single (org, metric, period_start) row, creating it if needed."""
    result = await session.execute(
        select(UsageRecord)
        .where(
            UsageRecord.org_id == org_id,
            UsageRecord.period_start == period_start,
            UsageRecord.metric_type == metric_type,
        )
        .limit(1)
    )
    existing = result.scalar_one_or_none()

    if existing is not None:
        existing.quantity = quantity
        existing.updated_at = utcnow()
    else:
        session.add(UsageRecord(
            org_id=org_id,
            metric_type=metric_type,
            quantity=quantity,
            period_start=period_start,
            period_end=period_end,
        ))


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


async def aggregate_usage(client: redis.Redis, hour_bucket: str | None = None) -> dict:
    """
    Flush one hour bucket of API-call counters (default: previous hour).

    Returns:
        processedKeys counts every scanned key, including ones that failed
        or were skipped.

    Raises:
        InvalidHourBucket: hour_bucket is not YYYY-MM-DD-HH
    """
    started = time.monotonic()
    hour_bucket = hour_bucket or get_hour_bucket(datetime.now(timezone.utc) - timedelta(hours=1))
    period_start = parse_hour_bucket(hour_bucket)
    period_end = period_start + timedelta(hours=1)

    log = get_logger(component="UsageAggregation", hour_bucket=hour_bucket)
    log.info("usage_aggregation_started")

    keys = [_decode(key) async for key in client.scan_iter(match=usage_key_pattern(hour_bucket))]
    log.debug("usage_keys_found", key_count=len(keys))

    aggregated = skipped = failed = 0
    for key in keys:
        try:
            org_id = parse_usage_key(key)
            if org_id is None:
                log.warning("invalid_usage_key", key=key)
                skipped += 1
                continue

            raw = await client.get(key)
            try:
                quantity = int(_decode(raw) or 0)
            except ValueError:
                log.warning("invalid_usage_value", key=key)
                skipped += 1
                continue

            if quantity == 0:
                log.debug("zero_usage", org_id=org_id)
                skipped += 1
                continue

            await run_with_service_context(
                "UsageAggregation.upsertRecord",
                lambda session: upsert_usage_record(
                    session, org_id, MetricType.API_CALLS.value, quantity, period_start, period_end
                ),
            )

            # Only after the durable write succeeded
            await client.delete(key)

            track_usage_record(MetricType.API_CALLS.value)
            aggregated += 1
            log.debug("usage_aggregated", org_id=org_id, quantity=quantity)
        except Exception:
            failed += 1
            log.error("usage_aggregation_key_failed", key=key, exc_info=True)

    duration_ms = round((time.monotonic() - started) * 1000, 2)
    log.info(
        "usage_aggregation_completed",
        processed_keys=len(keys),
        aggregated_keys=aggregated,
        failed_keys=failed,
        duration_ms=duration_ms,
    )
    return {
        "success": True,
        "hourBucket": hour_bucket,
        "processedKeys": len(keys),
        "aggregatedKeys": aggregated,
        "skippedKeys": skipped,
        "failedKeys": failed,
    }


async def count_members(session: AsyncSession, org_id: str) -> int:
    count = await session.scalar(
        select(func.count()).select_from(User).where(User.org_id == org_id)
    )
    return int(count or 0)


async def snapshot_active_seats(target_date: str | None = None) -> dict:
    """
    Record today's (or target_date's) member count for every organisation.

    Returns:
        {"success": True, "date": ..., "processedOrgs": n, "failedOrgs": m}
    """
    day = parse_date(target_date, datetime.now(timezone.utc).date())
    period_start, period_end = day_bounds(day)
    log = get_logger(component="ActiveSeats", date=day.isoformat())
    log.info("active_seats_started")

    org_ids = await run_with_service_context(
        "ActiveSeats.getOrgs",
        lambda session: _list_org_ids(session),
    )
    log.debug("organisations_found", org_count=len(org_ids))

    processed = failed = 0
    for org_id in org_ids:
        try:
            async def _snapshot(session: AsyncSession, org_id=org_id):
                seats = await count_members(session, org_id)
                await upsert_usage_record(
                    session, org_id, MetricType.ACTIVE_SEATS.value, seats, period_start, period_end
                )
                return seats

            seats = await run_with_service_context("ActiveSeats.upsertRecord", _snapshot)
            track_usage_record(MetricType.ACTIVE_SEATS.value)
            processed += 1
            log.debug("active_seats_recorded", org_id=org_id, seats=seats)
        except Exception:
            failed += 1
            log.error("active_seats_org_failed", org_id=org_id, exc_info=True)

    log.info("active_seats_completed", processed_orgs=processed, failed_orgs=failed)
    return {"success": True, "date": day.isoformat(), "processedOrgs": processed, "failedOrgs": failed}


async def _list_org_ids(session: AsyncSession) -> list[str]:
    result = await session.execute(select(Organisation.id))
    return list(result.scalars().all())
