"""
Delivery API - per-message evidence, delivery stats, SLA metrics and CSV export.
"""
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.database import get_db
from deliveryledger.services.audit_trail import (
    MessageNotFoundError,
    find_message_log,
    get_audit_trail,
    get_message_events,
    iter_events_csv,
    serialize_event,
    serialize_message_log,
)
from deliveryledger.services.delivery_analytics import (
    SLA_PERIODS,
    get_average_delivery_times,
    get_delivery_stats,
    get_hourly_stats,
    get_sla_metrics,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/delivery", tags=["delivery"])


def _range(start: Optional[date], end: Optional[date], default_days: int = 7) -> tuple[datetime, datetime]:
    """[start, end) in UTC. end is inclusive as a date, so it becomes midnight of the next day."""
    today = datetime.now(timezone.utc).date()
    end = end or today
    start = start or (end - timedelta(days=default_days - 1))
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return (
        datetime(start.year, start.month, start.day, tzinfo=timezone.utc),
        datetime(end.year, end.month, end.day, tzinfo=timezone.utc) + timedelta(days=1),
    )


@router.get("/messages/{reference}/events")
async def message_events(
    reference: str,
    tenant_id: Optional[uuid.UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Ordered audit rows for one message (provider message id, idempotency key or id)."""
    log = await find_message_log(db, reference, tenant_id)
    if log is None:
        raise HTTPException(status_code=404, detail="Message not found")

    events = await get_message_events(db, log.id)
    return {
        "success": True,
        "data": {
            "message": serialize_message_log(log),
            "events": [serialize_event(e, include_evidence=False) for e in events],
        },
    }


@router.get("/messages/{reference}/audit")
async def message_audit_trail(
    reference: str,
    tenant_id: Optional[uuid.UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Dispute evidence: events with raw payloads plus the webhook receipts that carried them."""
    try:
        data = await get_audit_trail(db, reference, tenant_id)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"success": True, "data": data}


@router.get("/stats")
async def delivery_stats(
    tenant_id: Optional[uuid.UUID] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    period_start, period_end = _range(start, end)
    stats = await get_delivery_stats(db, tenant_id, period_start, period_end)
    stats.update(await get_average_delivery_times(db, tenant_id, period_start))
    return {"success": True, "data": stats}


@router.get("/hourly")
async def hourly_stats(
    tenant_id: Optional[uuid.UUID] = Query(None),
    day: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """24 UTC hour buckets of applied events."""
    day = day or datetime.now(timezone.utc).date()
    buckets = await get_hourly_stats(db, tenant_id, day)
    return {"success": True, "data": {"date": day.isoformat(), "hours": buckets}}


@router.get("/sla")
async def sla_metrics(
    tenant_id: Optional[uuid.UUID] = Query(None),
    period: str = Query("7d"),
    db: AsyncSession = Depends(get_db),
):
    if period not in SLA_PERIODS:
        raise HTTPException(
            status_code=400,
            detail=f"period must be one of: {', '.join(SLA_PERIODS)}",
        )
    data = await get_sla_metrics(db, tenant_id, period)
    return {"success": True, "data": data}


@router.get("/export")
async def export_events_csv(
    tenant_id: Optional[uuid.UUID] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Stream delivery events received in the date range as CSV."""
    period_start, period_end = _range(start, end)
    filename = f"delivery_events_{period_start.date().isoformat()}_{(period_end - timedelta(days=1)).date().isoformat()}.csv"
    logger.info(
        "CSV export %s - %s", period_start.date(), period_end.date(),
        extra={"tenant_id": str(tenant_id) if tenant_id else None},
    )
    return StreamingResponse(
        iter_events_csv(db, tenant_id, period_start, period_end),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
