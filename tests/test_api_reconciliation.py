"""
Reconciliation API tests - run, browse and the anomaly review endpoints.
"""
import uuid
from datetime import date, timedelta
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from deliveryledger.api.reconciliation import (
    report_detail,
    reports,
    resolve,
    review_anomaly,
    run_reconciliation,
    summary,
)
from deliveryledger.schemas.api_requests import (
    ResolveAnomalyRequest,
    ReviewAnomalyRequest,
    RunReconciliationRequest,
)
from deliveryledger.services.reconciliation import ReconciliationEngine
from deliveryledger.services.reconciliation_source import ReconciliationData, ReconciliationSource

REPORT_DATE = date(2024, 3, 4)


class NegativeWalletSource(ReconciliationSource):
    async def load_period(self, start, end):
        return ReconciliationData(
            period_start=start,
            period_end=end,
            tenant_balances={uuid.UUID("11111111-1111-1111-1111-111111111111"): -3.0},
        )


@pytest.fixture(autouse=True)
def fake_engine():
    with patch(
        "deliveryledger.api.reconciliation.engine_from_settings",
        side_effect=lambda db: ReconciliationEngine(db, NegativeWalletSource()),
    ) as mock, patch("deliveryledger.services.reconciliation.send_alert"):
        yield mock


async def _run(db, **kwargs) -> dict:
    payload = RunReconciliationRequest(report_date=kwargs.pop("report_date", REPORT_DATE), **kwargs)
    response = await run_reconciliation(payload, db=db)
    return response["data"]


class TestRun:
    async def test_run_creates_report(self, db):
        data = await _run(db, executed_by="ops@example.com")

        assert data["status"] == "anomaly_detected"
        assert data["period_type"] == "daily"
        assert data["report_date"] == "2024-03-04"
        assert data["executed_by"] == "ops@example.com"
        assert data["balance_anomalies"] == 1

    async def test_rerun_returns_same_report(self, db):
        first = await _run(db)
        second = await _run(db)
        assert second["id"] == first["id"]

    async def test_forced_rerun(self, db):
        first = await _run(db)
        second = await _run(db, force=True)
        assert second["id"] != first["id"]

        listing = await reports(
            period_type=None, status=None, include_superseded=True, limit=50, offset=0, db=db,
        )
        superseded = [r for r in listing["data"] if r["is_superseded"]]
        assert [r["superseded_by_id"] for r in superseded] == [second["id"]]

    async def test_bad_period_type(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await _run(db, period_type="hourly")
        assert exc_info.value.status_code == 400


class TestBrowse:
    async def test_report_detail_with_anomalies(self, db):
        run = await _run(db)

        response = await report_detail(uuid.UUID(run["id"]), severity=None, resolution_status=None, db=db)

        anomalies = response["data"]["anomalies"]
        assert len(anomalies) == 1
        assert anomalies[0]["anomaly_type"] == "negative_balance"
        assert anomalies[0]["severity"] == "critical"

    async def test_report_detail_filters(self, db):
        run = await _run(db)
        report_id = uuid.UUID(run["id"])

        low = await report_detail(report_id, severity="low", resolution_status=None, db=db)
        pending = await report_detail(report_id, severity="critical", resolution_status="pending", db=db)

        assert low["data"]["anomalies"] == []
        assert len(pending["data"]["anomalies"]) == 1

    async def test_report_detail_rejects_unknown_filters(self, db):
        run = await _run(db)
        report_id = uuid.UUID(run["id"])

        with pytest.raises(HTTPException) as bad_severity:
            await report_detail(report_id, severity="urgent", resolution_status=None, db=db)
        with pytest.raises(HTTPException) as bad_status:
            await report_detail(report_id, severity=None, resolution_status="closed", db=db)

        assert bad_severity.value.status_code == 400
        assert bad_status.value.status_code == 400

    async def test_report_not_found(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await report_detail(uuid.uuid4(), severity=None, resolution_status=None, db=db)
        assert exc_info.value.status_code == 404

    async def test_summary(self, db):
        await _run(db)
        await _run(db, report_date=REPORT_DATE + timedelta(days=1))

        response = await summary(period_type="daily", start_date=None, end_date=None, db=db)

        assert response["data"]["total_reports"] == 2
        assert response["data"]["open_critical_anomalies"] == 2


class TestAnomalyEndpoints:
    async def _anomaly_id(self, db) -> uuid.UUID:
        run = await _run(db)
        detail = await report_detail(uuid.UUID(run["id"]), severity=None, resolution_status=None, db=db)
        return uuid.UUID(detail["data"]["anomalies"][0]["id"])

    async def test_review_and_resolve(self, db):
        anomaly_id = await self._anomaly_id(db)

        reviewed = await review_anomaly(anomaly_id, ReviewAnomalyRequest(reviewer_id="alice"), db=db)
        assert reviewed["data"]["resolution_status"] == "investigating"

        resolved = await resolve(
            anomaly_id,
            ResolveAnomalyRequest(status="resolved", notes="Top-up posted", resolver_id="alice"),
            db=db,
        )
        assert resolved["data"]["resolution_status"] == "resolved"
        assert resolved["data"]["resolved_by"] == "alice"

    async def test_resolve_twice_conflicts(self, db):
        anomaly_id = await self._anomaly_id(db)
        await resolve(anomaly_id, ResolveAnomalyRequest(status="accepted_risk", resolver_id="alice"), db=db)

        with pytest.raises(HTTPException) as exc_info:
            await resolve(anomaly_id, ResolveAnomalyRequest(status="resolved", resolver_id="bob"), db=db)
        assert exc_info.value.status_code == 409

    async def test_review_closed_anomaly_conflicts(self, db):
        anomaly_id = await self._anomaly_id(db)
        await resolve(anomaly_id, ResolveAnomalyRequest(status="false_positive", resolver_id="alice"), db=db)

        with pytest.raises(HTTPException) as exc_info:
            await review_anomaly(anomaly_id, ReviewAnomalyRequest(reviewer_id="bob"), db=db)
        assert exc_info.value.status_code == 409

    async def test_invalid_resolution_status(self, db):
        anomaly_id = await self._anomaly_id(db)
        with pytest.raises(HTTPException) as exc_info:
            await resolve(anomaly_id, ResolveAnomalyRequest(status="ignored", resolver_id="alice"), db=db)
        assert exc_info.value.status_code == 400

    async def test_unknown_anomaly(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await review_anomaly(uuid.uuid4(), ReviewAnomalyRequest(reviewer_id="alice"), db=db)
        assert exc_info.value.status_code == 404
