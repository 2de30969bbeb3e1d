"""
Usage tracking counters.

Request-path instrumentation increments one Redis counter per org per hour:
usage:api_calls:{org_id}:{YYYY-MM-DD-HH}. Counters are a disposable cache;
the aggregation job flushes them into UsageRecord rows.
"""
from datetime import datetime, timezone

import redis.asyncio as redis

from eventpipe.config import settings
from eventpipe.logging_config import get_logger
from eventpipe.models.usage import MetricType

logger = get_logger(component="UsageTracking")

KEY_PREFIX = "usage"


class InvalidHourBucket(ValueError):
    pass


def get_hour_bucket(moment: datetime | None = None) -> str:
    """UTC hour bucket string, e.g. 2026-03-01-14."""
    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d-%H")


def parse_hour_bucket(bucket: str) -> datetime:
    """Start of the bucket's hour in UTC."""
    try:
        year, month, day, hour = (int(part) for part in bucket.split("-"))
        return datetime(year, month, day, hour, tzinfo=timezone.utc)
    except ValueError:
        raise InvalidHourBucket(f"Invalid hour bucket format: {bucket}") from None


def usage_key(org_id: str, hour_bucket: str, metric: str = MetricType.API_CALLS.value) -> str:
    return f"{KEY_PREFIX}:{metric}:{org_id}:{hour_bucket}"


def usage_key_pattern(hour_bucket: str, metric: str = MetricType.API_CALLS.value) -> str:
    return f"{KEY_PREFIX}:{metric}:*:{hour_bucket}"


def parse_usage_key(key: str) -> str | None:
    """Extract org_id from a counter key, None when malformed."""
    parts = key.split(":")
    if len(parts) != 4 or parts[0] != KEY_PREFIX or not parts[2]:
        return None
    return parts[2]


async def track_api_call(client: redis.Redis, org_id: str, moment: datetime | None = None) -> None:
    """
    Count one API call for org_id in the current hour bucket.

    Fire-and-forget: a Redis outage must never fail the request being counted.
    """
    key = usage_key(org_id, get_hour_bucket(moment))
    try:
        pipe = client.pipeline()
        pipe.incr(key)
        pipe.expire(key, settings.USAGE_COUNTER_TTL_SECONDS)
        await pipe.execute()
    except Exception as e:
        logger.warning("usage_tracking_failed", org_id=org_id, error=str(e))
