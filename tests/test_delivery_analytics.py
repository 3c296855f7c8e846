"""
Delivery analytics tests - percentiles, rates, event-type breakdowns and
hourly buckets.
"""
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.services.delivery_analytics import (
    get_average_delivery_times,
    get_delivery_stats,
    get_hourly_stats,
    get_sla_metrics,
    percentile,
    rate,
)
from deliveryledger.services.delivery_state import apply_event

DAY = date(2024, 3, 1)
T0 = datetime(2024, 3, 1, 9, 15, tzinfo=timezone.utc)


def _event(log, event_type: str, at: datetime) -> NormalizedEvent:
    return NormalizedEvent(
        provider="meta",
        event_type=event_type,
        provider_message_id=log.provider_message_id,
        provider_event_id=f"{log.provider_message_id}_{event_type}",
        event_timestamp=at,
    )


class TestPercentile:
    def test_nearest_rank(self):
        values = [1, 2, 3, 4, 5]
        assert percentile(values, 50) == 3
        assert percentile(values, 95) == 5
        assert percentile(values, 99) == 5

    def test_single_sample(self):
        assert percentile([7], 50) == 7
        assert percentile([7], 99) == 7

    def test_empty_sample_is_zero(self):
        assert percentile([], 95) == 0


class TestRate:
    def test_rounded_percentage(self):
        assert rate(1, 3) == 33.33

    def test_zero_total(self):
        assert rate(5, 0) == 0.0


class TestDeliveryStats:
    async def test_counts_applied_events_in_window(self, db, make_message_log):
        # Created the day before; its events land inside the window
        log = await make_message_log(created_at=T0 - timedelta(days=1))
        await apply_event(db, log.id, _event(log, "sent", T0))
        await apply_event(db, log.id, _event(log, "delivered", T0 + timedelta(minutes=1)))
        await apply_event(db, log.id, _event(log, "read", T0 + timedelta(minutes=2)))
        # A repeated report is stored but never counted
        await apply_event(db, log.id, _event(log, "sent", T0 + timedelta(minutes=3)))
        await db.commit()

        stats = await get_delivery_stats(db, None, T0 - timedelta(hours=1), T0 + timedelta(hours=1))

        assert stats["total"] == 3
        assert stats["sent"] == 1
        assert stats["delivered"] == 1
        assert stats["read"] == 1
        assert stats["failed"] == 0
        assert stats["delivery_rate"] == 66.67
        assert stats["failure_rate"] == 0.0

    async def test_failure_rate_counts_failed_and_rejected(self, db, make_message_log):
        first = await make_message_log()
        second = await make_message_log()
        third = await make_message_log()
        await apply_event(db, first.id, _event(first, "failed", T0))
        await apply_event(db, second.id, _event(second, "rejected", T0))
        await apply_event(db, third.id, _event(third, "expired", T0))
        await db.commit()

        stats = await get_delivery_stats(db, None, T0, T0 + timedelta(hours=1))

        assert stats["total"] == 3
        assert stats["rejected"] == 1
        assert stats["expired"] == 1
        assert stats["failure_rate"] == 66.67

    async def test_window_is_half_open(self, db, make_message_log):
        log = await make_message_log()
        await apply_event(db, log.id, _event(log, "sent", T0))
        await db.commit()

        assert (await get_delivery_stats(db, None, T0 - timedelta(hours=1), T0))["total"] == 0
        assert (await get_delivery_stats(db, None, T0, T0 + timedelta(hours=1)))["total"] == 1

    async def test_tenant_filter(self, db, make_message_log):
        other = uuid.UUID("22222222-2222-2222-2222-222222222222")
        mine = await make_message_log()
        theirs = await make_message_log(tenant_id=other)
        await apply_event(db, mine.id, _event(mine, "delivered", T0))
        await apply_event(db, theirs.id, _event(theirs, "delivered", T0))
        await db.commit()

        stats = await get_delivery_stats(db, other, T0 - timedelta(hours=1), T0 + timedelta(hours=1))

        assert stats["total"] == 1

    async def test_empty_range(self, db):
        now = datetime.now(timezone.utc)
        stats = await get_delivery_stats(db, None, now - timedelta(hours=1), now)
        assert stats["total"] == 0
        assert stats["delivery_rate"] == 0.0


class TestHourlyStats:
    async def test_buckets_by_event_hour(self, db, make_message_log):
        first = await make_message_log()
        second = await make_message_log()

        await apply_event(db, first.id, _event(first, "sent", T0))
        await apply_event(db, first.id, _event(first, "delivered", T0 + timedelta(minutes=50)))
        await apply_event(db, second.id, _event(second, "rejected", T0))
        # Next day, outside the bucketed range
        await apply_event(db, second.id, _event(second, "sent", T0 + timedelta(days=1)))
        await db.commit()

        buckets = await get_hourly_stats(db, None, DAY)

        assert len(buckets) == 24
        assert buckets[9] == {"hour": 9, "sent": 1, "delivered": 0, "read": 0, "failed": 1}
        assert buckets[10]["delivered"] == 1
        assert sum(b["sent"] for b in buckets) == 1


class TestSlaMetrics:
    async def test_unknown_period(self, db):
        with pytest.raises(ValueError):
            await get_sla_metrics(db, None, "1y")

    async def test_default_period_is_seven_days(self, db, make_message_log):
        await make_message_log(created_at=datetime.now(timezone.utc) - timedelta(days=3))

        metrics = await get_sla_metrics(db, None)

        assert metrics["period"] == "7d"
        assert metrics["total_messages"] == 1

    async def test_delivery_time_percentiles(self, db, make_message_log):
        now = datetime.now(timezone.utc).replace(microsecond=0)
        for seconds in (10, 20, 30):
            log = await make_message_log()
            await apply_event(db, log.id, _event(log, "sent", now - timedelta(minutes=5)))
            await apply_event(
                db, log.id, _event(log, "delivered", now - timedelta(minutes=5) + timedelta(seconds=seconds)),
            )
        await db.commit()

        metrics = await get_sla_metrics(db, None, "24h")

        assert metrics["total_messages"] == 3
        assert metrics["success_rate"] == 100.0
        assert metrics["delivery_rate"] == 100.0
        timing = metrics["delivery_time_seconds"]
        assert timing["samples"] == 3
        assert timing["average"] == 20.0
        assert timing["p50"] == 20
        assert timing["p99"] == 30


class TestAverageDeliveryTimes:
    async def test_no_samples(self, db):
        averages = await get_average_delivery_times(db, None, datetime.now(timezone.utc) - timedelta(days=1))
        assert averages == {"avg_delivery_time_seconds": None, "avg_read_time_seconds": None}

    async def test_averages(self, db, make_message_log):
        log = await make_message_log()
        await apply_event(db, log.id, _event(log, "sent", T0))
        await apply_event(db, log.id, _event(log, "delivered", T0 + timedelta(seconds=40)))
        await apply_event(db, log.id, _event(log, "read", T0 + timedelta(seconds=100)))
        await db.commit()

        averages = await get_average_delivery_times(db, None, T0 - timedelta(hours=1))

        assert averages["avg_delivery_time_seconds"] == 40.0
        assert averages["avg_read_time_seconds"] == 60.0
