"""
Delivery analytics - read-side aggregations over message logs and events.
Pure SQL counts plus in-process percentiles. Nothing here writes.
"""
import logging
import math
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.models.message_event import MessageEvent
from deliveryledger.models.message_log import MessageLog
from deliveryledger.schemas.normalized_event import EVENT_TYPES
from deliveryledger.utils.metrics import as_utc

logger = logging.getLogger(__name__)

SLA_PERIODS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

SUCCESS_STATUSES = ("sent", "delivered", "read")
DELIVERED_STATUSES = ("delivered", "read")
FAILED_EVENT_TYPES = ("failed", "rejected")

# Event types folded into the hourly "failed" bucket
_HOURLY_BUCKETS = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
    "rejected": "failed",
    "expired": "failed",
}


def percentile(sorted_values: Sequence[float], p: float):
    """
    Nearest-rank percentile over an ascending sample.
    index = ceil(p/100 * n) - 1, clamped to [0, n-1]. Empty sample -> 0.
    """
    n = len(sorted_values)
    if n == 0:
        return 0
    index = math.ceil(p / 100 * n) - 1
    index = max(0, min(index, n - 1))
    return sorted_values[index]


def rate(count: int, total: int) -> float:
    """Percentage rounded to 2 decimals; 0.0 when there is nothing to divide by."""
    if not total:
        return 0.0
    return round(count / total * 100, 2)


def _tenant_filter(column, tenant_id: Optional[uuid.UUID]) -> list:
    return [column == tenant_id] if tenant_id else []


async def _status_counts(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    start: datetime,
    end: datetime,
) -> dict[str, int]:
    result = await db.execute(
        select(MessageLog.status, func.count())
        .where(
            and_(
                MessageLog.created_at >= start,
                MessageLog.created_at < end,
                *_tenant_filter(MessageLog.tenant_id, tenant_id),
            )
        )
        .group_by(MessageLog.status)
    )
    return {status: count for status, count in result.all()}


async def get_delivery_stats(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    start: datetime,
    end: datetime,
) -> dict:
    """
    Status-changing events by type, for events timestamped in [start, end).
    Rates are per applied event: delivered + read over all, failed + rejected over all.
    """
    result = await db.execute(
        select(MessageEvent.event_type, func.count())
        .where(
            and_(
                MessageEvent.status_changed == True,  # noqa: E712
                MessageEvent.event_timestamp >= start,
                MessageEvent.event_timestamp < end,
                *_tenant_filter(MessageEvent.tenant_id, tenant_id),
            )
        )
        .group_by(MessageEvent.event_type)
    )
    counts = {event_type: count for event_type, count in result.all()}
    total = sum(counts.values())
    delivered = sum(counts.get(t, 0) for t in DELIVERED_STATUSES)
    failed = sum(counts.get(t, 0) for t in FAILED_EVENT_TYPES)

    stats = {
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "total": total,
    }
    stats.update({event_type: counts.get(event_type, 0) for event_type in EVENT_TYPES})
    stats["delivery_rate"] = rate(delivered, total)
    stats["failure_rate"] = rate(failed, total)
    return stats


async def get_hourly_stats(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    day: date,
) -> list[dict]:
    """24 hourly buckets (UTC) of applied sent/delivered/read/failed events for one day."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    end = start + timedelta(days=1)

    result = await db.execute(
        select(MessageEvent.event_type, MessageEvent.event_timestamp).where(
            and_(
                MessageEvent.status_changed == True,  # noqa: E712
                MessageEvent.event_timestamp >= start,
                MessageEvent.event_timestamp < end,
                *_tenant_filter(MessageEvent.tenant_id, tenant_id),
            )
        )
    )

    buckets = [
        {"hour": hour, "sent": 0, "delivered": 0, "read": 0, "failed": 0}
        for hour in range(24)
    ]
    for event_type, event_timestamp in result.all():
        bucket = _HOURLY_BUCKETS.get(event_type)
        if bucket is None:
            continue
        buckets[as_utc(event_timestamp).hour][bucket] += 1
    return buckets


async def _delivery_durations(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    since: datetime,
) -> list[int]:
    result = await db.execute(
        select(MessageEvent.delivery_time_seconds).where(
            and_(
                MessageEvent.delivery_time_seconds.is_not(None),
                MessageEvent.status_changed == True,  # noqa: E712
                MessageEvent.event_timestamp >= since,
                *_tenant_filter(MessageEvent.tenant_id, tenant_id),
            )
        )
    )
    return sorted(result.scalars().all())


async def get_sla_metrics(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    period: str = "7d",
) -> dict:
    """Success/delivery/read rates and delivery-time percentiles over a rolling window."""
    if period not in SLA_PERIODS:
        raise ValueError(f"Unknown SLA period '{period}' (expected one of {', '.join(SLA_PERIODS)})")

    now = datetime.now(timezone.utc)
    since = now - SLA_PERIODS[period]

    counts = await _status_counts(db, tenant_id, since, now)
    total = sum(counts.values())
    success = sum(counts.get(s, 0) for s in SUCCESS_STATUSES)
    delivered = sum(counts.get(s, 0) for s in DELIVERED_STATUSES)

    durations = await _delivery_durations(db, tenant_id, since)
    average = round(sum(durations) / len(durations), 2) if durations else 0

    return {
        "period": period,
        "total_messages": total,
        "success_rate": rate(success, total),
        "delivery_rate": rate(delivered, total),
        "read_rate": rate(counts.get("read", 0), total),
        "delivery_time_seconds": {
            "samples": len(durations),
            "average": average,
            "p50": round(percentile(durations, 50), 2),
            "p95": round(percentile(durations, 95), 2),
            "p99": round(percentile(durations, 99), 2),
        },
    }


async def get_average_delivery_times(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    since: datetime,
) -> dict:
    """Mean sent->delivered and delivered->read seconds for applied events since a point in time."""
    result = await db.execute(
        select(
            func.avg(MessageEvent.delivery_time_seconds),
            func.avg(MessageEvent.read_time_seconds),
        ).where(
            and_(
                MessageEvent.status_changed == True,  # noqa: E712
                MessageEvent.event_timestamp >= since,
                *_tenant_filter(MessageEvent.tenant_id, tenant_id),
            )
        )
    )
    avg_delivery, avg_read = result.one()
    return {
        "avg_delivery_time_seconds": round(float(avg_delivery), 2) if avg_delivery is not None else None,
        "avg_read_time_seconds": round(float(avg_read), 2) if avg_read is not None else None,
    }
