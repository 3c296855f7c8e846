"""
Delivery API tests - evidence lookups, stats endpoints and CSV export.
"""
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from deliveryledger.api.delivery_reports import (
    _range,
    delivery_stats,
    export_events_csv,
    hourly_stats,
    message_audit_trail,
    message_events,
    sla_metrics,
)
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.services.delivery_state import apply_event

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _deliver(db, log):
    for offset, event_type in enumerate(("sent", "delivered")):
        await apply_event(db, log.id, NormalizedEvent(
            provider="meta",
            event_type=event_type,
            provider_message_id=log.provider_message_id,
            provider_event_id=f"{log.provider_message_id}_{event_type}",
            event_timestamp=T0 + timedelta(seconds=offset * 30),
            raw_payload={"status": event_type},
        ), received_at=T0 + timedelta(seconds=offset * 30))
    await db.commit()


class TestRange:
    def test_end_date_is_inclusive(self):
        start, end = _range(date(2024, 3, 1), date(2024, 3, 1))
        assert start == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 2, tzinfo=timezone.utc)

    def test_default_window(self):
        start, end = _range(None, date(2024, 3, 7))
        assert start == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_inverted_range(self):
        with pytest.raises(HTTPException) as exc_info:
            _range(date(2024, 3, 2), date(2024, 3, 1))
        assert exc_info.value.status_code == 400


class TestMessageEndpoints:
    async def test_events_without_evidence(self, db, make_message_log):
        log = await make_message_log()
        await _deliver(db, log)

        response = await message_events(log.provider_message_id, tenant_id=None, db=db)

        data = response["data"]
        assert data["message"]["status"] == "delivered"
        assert [e["event_type"] for e in data["events"]] == ["sent", "delivered"]
        assert "raw_payload" not in data["events"][0]

    async def test_events_unknown_message(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await message_events("wamid.missing", tenant_id=None, db=db)
        assert exc_info.value.status_code == 404

    async def test_audit_includes_raw_payloads(self, db, make_message_log):
        log = await make_message_log()
        await _deliver(db, log)

        response = await message_audit_trail(log.idempotency_key, tenant_id=None, db=db)

        assert response["success"] is True
        assert response["data"]["events"][1]["raw_payload"] == {"status": "delivered"}
        assert response["data"]["summary"]["applied"] == 2

    async def test_audit_unknown_message(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await message_audit_trail("nope", tenant_id=None, db=db)
        assert exc_info.value.status_code == 404


class TestStatsEndpoints:
    async def test_stats_include_average_times(self, db, make_message_log):
        log = await make_message_log()
        await _deliver(db, log)
        response = await delivery_stats(tenant_id=None, start=T0.date(), end=T0.date(), db=db)

        data = response["data"]
        assert data["total"] == 2
        assert data["sent"] == 1
        assert data["delivered"] == 1
        assert data["delivery_rate"] == 50.0
        assert "avg_delivery_time_seconds" in data

    async def test_hourly(self, db, make_message_log):
        log = await make_message_log()
        await _deliver(db, log)

        response = await hourly_stats(tenant_id=None, day=date(2024, 3, 1), db=db)

        assert response["data"]["date"] == "2024-03-01"
        assert response["data"]["hours"][12]["sent"] == 1
        assert response["data"]["hours"][12]["delivered"] == 1

    async def test_sla_bad_period(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await sla_metrics(tenant_id=None, period="1y", db=db)
        assert exc_info.value.status_code == 400

    async def test_sla(self, db):
        response = await sla_metrics(tenant_id=None, period="7d", db=db)
        assert response["data"]["period"] == "7d"
        assert response["data"]["total_messages"] == 0


class TestExport:
    async def test_csv_stream(self, db, make_message_log):
        log = await make_message_log()
        await _deliver(db, log)

        response = await export_events_csv(tenant_id=None, start=date(2024, 3, 1), end=date(2024, 3, 1), db=db)

        assert response.media_type == "text/csv"
        assert "delivery_events_2024-03-01_2024-03-01.csv" in response.headers["content-disposition"]
        chunks = [chunk async for chunk in response.body_iterator]
        text = "".join(c if isinstance(c, str) else c.decode() for c in chunks)
        lines = text.strip().splitlines()
        assert lines[0].startswith("Event ID,Provider Message ID")
        assert len(lines) == 3
