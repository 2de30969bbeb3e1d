"""
Stripe Usage Report

Daily: sum the previous day's unreported api_calls records per org and send
one meter event per org to Stripe, then flag the contributing records as
reported. One org's failure never aborts the rest.
"""
import asyncio
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.config import settings
from eventpipe.database import run_with_service_context
from eventpipe.logging_config import get_logger
from eventpipe.models.base import utcnow
from eventpipe.models.billing import Customer, Subscription
from eventpipe.models.usage import MetricType, UsageRecord
from eventpipe.routes.metrics import track_usage_report
from eventpipe.services.stripe_service import StripeService
from eventpipe.services.usage_aggregation import day_bounds, parse_date


async def get_unreported_records(session: AsyncSession, start: datetime, end: datetime) -> list[tuple[str, str, int]]:
    """(id, org_id, quantity) of unreported api_calls records starting in [start, end)."""
    result = await session.execute(
        select(UsageRecord.id, UsageRecord.org_id, UsageRecord.quantity).where(
            UsageRecord.period_start >= start,
            UsageRecord.period_start < end,
            UsageRecord.reported_to_stripe.is_(False),
            UsageRecord.metric_type == MetricType.API_CALLS.value,
        )
    )
    return [tuple(row) for row in result.all()]


async def get_active_subscription(session: AsyncSession, org_id: str) -> tuple[str, str] | None:
    """(stripe_subscription_id, stripe_customer_id) of the org's active subscription."""
    result = await session.execute(
        select(Subscription.stripe_subscription_id, Customer.stripe_customer_id)
        .join(Customer, Customer.id == Subscription.customer_id)
        .where(Subscription.org_id == org_id, Subscription.status == "active")
        .limit(1)
    )
    row = result.first()
    return tuple(row) if row else None


async def mark_reported(record_ids: list[str], usage_record_id: str) -> None:
    async def _mark(session: AsyncSession):
        await session.execute(
            update(UsageRecord)
            .where(UsageRecord.id.in_(record_ids))
            .values(
                reported_to_stripe=True,
                stripe_usage_record_id=usage_record_id,
                reported_at=utcnow(),
            )
        )

    await run_with_service_context("StripeUsageReport.markReported", _mark)


async def report_usage(stripe_service: StripeService, target_date: str | None = None) -> dict:
    """
    Report one day's API usage to Stripe (default: yesterday, UTC).

    Orgs without an active subscription, or whose subscription has no
    metered price, are skipped without error.

    Returns:
        {"success": True, "date": ..., "reportedOrgs": n, "skippedOrgs": m, "failedOrgs": k}
    """
    started = time.monotonic()
    day = parse_date(target_date, (datetime.now(timezone.utc) - timedelta(days=1)).date())
    start_of_day, end_of_day = day_bounds(day)
    next_day = start_of_day + timedelta(days=1)

    log = get_logger(component="StripeUsageReport", date=day.isoformat())
    log.info("usage_report_started")

    records = await run_with_service_context(
        "StripeUsageReport.getUnreported",
        lambda session: get_unreported_records(session, start_of_day, next_day),
    )
    log.debug("unreported_records_found", record_count=len(records))

    usage_by_org: dict[str, int] = defaultdict(int)
    records_by_org: dict[str, list[str]] = defaultdict(list)
    for record_id, org_id, quantity in records:
        usage_by_org[org_id] += quantity
        records_by_org[org_id].append(record_id)

    timestamp = int(end_of_day.timestamp())
    reported = skipped = failed = 0

    for org_id, total in usage_by_org.items():
        try:
            subscription = await run_with_service_context(
                "StripeUsageReport.getSubscription",
                lambda session: get_active_subscription(session, org_id),
            )
            if subscription is None:
                log.debug("no_active_subscription", org_id=org_id)
                skipped += 1
                track_usage_report("skipped")
                continue

            stripe_subscription_id, stripe_customer_id = subscription
            remote = await asyncio.to_thread(stripe_service.get_subscription, stripe_subscription_id)
            if stripe_service.find_metered_item(remote) is None:
                log.debug("no_metered_price", org_id=org_id)
                skipped += 1
                track_usage_report("skipped")
                continue

            await asyncio.to_thread(
                stripe_service.create_meter_event,
                settings.STRIPE_METER_EVENT_NAME,
                stripe_customer_id,
                total,
                timestamp,
            )
            log.info("usage_reported", org_id=org_id, quantity=total)

            await mark_reported(records_by_org[org_id], f"meter_event_{org_id}_{timestamp}")
            reported += 1
            track_usage_report("reported")
        except Exception:
            failed += 1
            track_usage_report("failed")
            log.error("usage_report_org_failed", org_id=org_id, exc_info=True)

    duration_ms = round((time.monotonic() - started) * 1000, 2)
    log.info(
        "usage_report_completed",
        reported_orgs=reported,
        skipped_orgs=skipped,
        failed_orgs=failed,
        duration_ms=duration_ms,
    )
    return {
        "success": True,
        "date": day.isoformat(),
        "reportedOrgs": reported,
        "skippedOrgs": skipped,
        "failedOrgs": failed,
    }
