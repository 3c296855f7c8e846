"""
Reconciliation API - run period reconciliations, browse reports and work
the anomaly resolution queue.
"""
import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.database import get_db
from deliveryledger.models.reconciliation import ReconciliationAnomaly, ReconciliationReport
from deliveryledger.schemas.api_requests import (
    ResolveAnomalyRequest,
    ReviewAnomalyRequest,
    RunReconciliationRequest,
)
from deliveryledger.services.reconciliation import (
    PERIOD_TYPES,
    RESOLUTION_STATUSES,
    AnomalyNotFoundError,
    AnomalyTransitionError,
    ReportNotFoundError,
    engine_from_settings,
    get_reconciliation_summary,
    get_report,
    list_anomalies,
    list_reports,
    resolve_anomaly,
    start_review,
)
from deliveryledger.services.reconciliation_checks import SEVERITIES

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/reconciliation", tags=["reconciliation"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_report(report: ReconciliationReport) -> dict:
    return {
        "id": str(report.id),
        "period_type": report.period_type,
        "report_date": _iso(report.report_date),
        "period_start": _iso(report.period_start),
        "period_end": _iso(report.period_end),
        "status": report.status,
        "total_invoices_checked": report.total_invoices_checked,
        "total_messages_checked": report.total_messages_checked,
        "total_ledger_entries_checked": report.total_ledger_entries_checked,
        "invoice_anomalies": report.invoice_anomalies,
        "message_anomalies": report.message_anomalies,
        "balance_anomalies": report.balance_anomalies,
        "total_anomalies": report.total_anomalies,
        "total_invoice_amount": report.total_invoice_amount,
        "total_ledger_credits": report.total_ledger_credits,
        "total_ledger_debits": report.total_ledger_debits,
        "summary": report.summary,
        "error_message": report.error_message,
        "execution_duration_seconds": report.execution_duration_seconds,
        "executed_by": report.executed_by,
        "is_superseded": report.is_superseded,
        "superseded_by_id": str(report.superseded_by_id) if report.superseded_by_id else None,
        "started_at": _iso(report.started_at),
        "completed_at": _iso(report.completed_at),
    }


def serialize_anomaly(anomaly: ReconciliationAnomaly) -> dict:
    return {
        "id": str(anomaly.id),
        "report_id": str(anomaly.report_id),
        "anomaly_type": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "entity_type": anomaly.entity_type,
        "entity_id": anomaly.entity_id,
        "tenant_id": str(anomaly.tenant_id) if anomaly.tenant_id else None,
        "description": anomaly.description,
        "expected_amount": anomaly.expected_amount,
        "actual_amount": anomaly.actual_amount,
        "difference_amount": anomaly.difference_amount,
        "entity_data": anomaly.entity_data,
        "resolution_status": anomaly.resolution_status,
        "resolution_notes": anomaly.resolution_notes,
        "review_started_by": anomaly.review_started_by,
        "review_started_at": _iso(anomaly.review_started_at),
        "resolved_by": anomaly.resolved_by,
        "resolved_at": _iso(anomaly.resolved_at),
        "created_at": _iso(anomaly.created_at),
    }


@router.post("/run")
async def run_reconciliation(
    payload: RunReconciliationRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Reconcile one period. Without force an existing report for the period
    is returned as-is; with force a new report supersedes it.
    """
    if payload.period_type not in PERIOD_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"period_type must be one of: {', '.join(PERIOD_TYPES)}",
        )
    engine = engine_from_settings(db)
    report = await engine.run(
        payload.period_type,
        payload.report_date,
        force=payload.force,
        executed_by=payload.executed_by,
    )
    return {"success": True, "data": serialize_report(report)}


@router.get("/reports")
async def reports(
    period_type: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    include_superseded: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_reports(
        db,
        period_type=period_type,
        status=status,
        include_superseded=include_superseded,
        limit=limit,
        offset=offset,
    )
    return {"success": True, "data": [serialize_report(r) for r in rows]}


@router.get("/reports/{report_id}")
async def report_detail(
    report_id: uuid.UUID,
    severity: Optional[str] = Query(None),
    resolution_status: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """One report with its anomalies."""
    if severity and severity not in SEVERITIES:
        raise HTTPException(
            status_code=400,
            detail=f"severity must be one of: {', '.join(SEVERITIES)}",
        )
    if resolution_status and resolution_status not in RESOLUTION_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"resolution_status must be one of: {', '.join(RESOLUTION_STATUSES)}",
        )
    try:
        report = await get_report(db, report_id)
    except ReportNotFoundError:
        raise HTTPException(status_code=404, detail="Report not found")

    anomalies = await list_anomalies(
        db,
        report_id=report.id,
        severity=severity,
        resolution_status=resolution_status,
        limit=1000,
    )
    data = serialize_report(report)
    data["anomalies"] = [serialize_anomaly(a) for a in anomalies]
    return {"success": True, "data": data}


@router.get("/summary")
async def summary(
    period_type: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    data = await get_reconciliation_summary(db, period_type, start_date, end_date)
    return {"success": True, "data": data}


@router.post("/anomalies/{anomaly_id}/review")
async def review_anomaly(
    anomaly_id: uuid.UUID,
    payload: ReviewAnomalyRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        anomaly = await start_review(db, anomaly_id, payload.reviewer_id)
    except AnomalyNotFoundError:
        raise HTTPException(status_code=404, detail="Anomaly not found")
    except AnomalyTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "data": serialize_anomaly(anomaly)}


@router.post("/anomalies/{anomaly_id}/resolve")
async def resolve(
    anomaly_id: uuid.UUID,
    payload: ResolveAnomalyRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        anomaly = await resolve_anomaly(
            db, anomaly_id, payload.status, payload.notes, payload.resolver_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AnomalyNotFoundError:
        raise HTTPException(status_code=404, detail="Anomaly not found")
    except AnomalyTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "data": serialize_anomaly(anomaly)}
