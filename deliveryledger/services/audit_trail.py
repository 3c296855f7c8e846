"""
Dispute evidence - full delivery history for one message, and CSV export
of delivery events for a date range.
"""
import csv
import io
import logging
import uuid
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.models.message_event import MessageEvent
from deliveryledger.models.message_log import MessageLog
from deliveryledger.services.receipts import find_receipts_for_message
from deliveryledger.utils.metrics import as_utc

logger = logging.getLogger(__name__)

CSV_COLUMNS = (
    "Event ID",
    "Provider Message ID",
    "Phone Number",
    "Event Type",
    "Event Timestamp",
    "Status Before",
    "Status After",
    "Status Changed",
    "Error Code",
    "Error Message",
    "Delivery Time (s)",
    "Read Time (s)",
    "Received At",
)
CSV_CHUNK_SIZE = 1000


class MessageNotFoundError(Exception):
    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


async def find_message_log(
    db: AsyncSession,
    reference: str,
    tenant_id: Optional[uuid.UUID] = None,
) -> Optional[MessageLog]:
    """Look a message up by provider message id, idempotency key or internal id."""
    conditions = [
        MessageLog.provider_message_id == reference,
        MessageLog.idempotency_key == reference,
    ]
    try:
        conditions.append(MessageLog.id == uuid.UUID(reference))
    except ValueError:
        pass

    query = select(MessageLog).where(or_(*conditions))
    if tenant_id:
        query = query.where(MessageLog.tenant_id == tenant_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


def serialize_message_log(log: MessageLog) -> dict:
    return {
        "id": str(log.id),
        "tenant_id": str(log.tenant_id) if log.tenant_id else None,
        "idempotency_key": log.idempotency_key,
        "provider_message_id": log.provider_message_id,
        "provider_name": log.provider_name,
        "phone_number": log.phone_number,
        "template_name": log.template_name,
        "status": log.status,
        "status_detail": log.status_detail,
        "error_code": log.error_code,
        "error_message": log.error_message,
        "message_cost": log.message_cost,
        "created_at": _iso(log.created_at),
        "sent_at": _iso(log.sent_at),
        "delivered_at": _iso(log.delivered_at),
        "read_at": _iso(log.read_at),
        "failed_at": _iso(log.failed_at),
    }


def serialize_event(event: MessageEvent, include_evidence: bool = True) -> dict:
    data = {
        "id": str(event.id),
        "provider_name": event.provider_name,
        "provider_event_id": event.provider_event_id,
        "event_type": event.event_type,
        "raw_status": event.raw_status,
        "event_timestamp": _iso(event.event_timestamp),
        "status_before": event.status_before,
        "status_after": event.status_after,
        "status_changed": event.status_changed,
        "is_duplicate": event.is_duplicate,
        "is_out_of_order": event.is_out_of_order,
        "process_result": event.process_result,
        "process_note": event.process_note,
        "error_code": event.error_code,
        "error_message": event.error_message,
        "delivery_time_seconds": event.delivery_time_seconds,
        "read_time_seconds": event.read_time_seconds,
        "received_at": _iso(event.received_at),
        "processed_at": _iso(event.processed_at),
    }
    if include_evidence:
        data["raw_payload"] = event.raw_payload
        data["webhook_signature"] = event.webhook_signature
    return data


async def get_message_events(db: AsyncSession, message_log_id: uuid.UUID) -> list[MessageEvent]:
    """Every audit row for a message, oldest first."""
    result = await db.execute(
        select(MessageEvent)
        .where(MessageEvent.message_log_id == message_log_id)
        .order_by(MessageEvent.received_at.asc(), MessageEvent.processed_at.asc())
    )
    return list(result.scalars().all())


async def get_audit_trail(
    db: AsyncSession,
    reference: str,
    tenant_id: Optional[uuid.UUID] = None,
) -> dict:
    """
    Dispute evidence bundle: message snapshot, ordered events with raw
    payloads and signatures, and the webhook receipts that carried them.
    """
    log = await find_message_log(db, reference, tenant_id)
    if log is None:
        raise MessageNotFoundError(f"No message matches reference '{reference}'")

    events = await get_message_events(db, log.id)
    receipts = []
    if log.provider_message_id:
        receipts = await find_receipts_for_message(
            db, log.provider_message_id, [event.id for event in events],
        )

    return {
        "message": serialize_message_log(log),
        "events": [serialize_event(event) for event in events],
        "receipts": [
            {
                "id": str(r.id),
                "provider": r.provider,
                "detected_provider": r.detected_provider,
                "endpoint": r.endpoint,
                "http_method": r.http_method,
                "headers": r.headers,
                "raw_body": r.raw_body,
                "signature": r.signature,
                "signature_header": r.signature_header,
                "signature_valid": r.signature_valid,
                "parsed_successfully": r.parsed_successfully,
                "response_code": r.response_code,
                "response_message": r.response_message,
                "source_ip": r.source_ip,
                "received_at": _iso(r.received_at),
            }
            for r in receipts
        ],
        "summary": {
            "total_events": len(events),
            "applied": sum(1 for e in events if e.status_changed),
            "duplicates": sum(1 for e in events if e.is_duplicate),
            "out_of_order": sum(1 for e in events if e.is_out_of_order),
            "receipts": len(receipts),
        },
    }


def _csv_row(event: MessageEvent) -> list:
    return [
        str(event.id),
        event.provider_message_id,
        event.phone_number or "",
        event.event_type,
        _iso(event.event_timestamp) or "",
        event.status_before or "",
        event.status_after or "",
        "Yes" if event.status_changed else "No",
        event.error_code or "",
        event.error_message or "",
        "" if event.delivery_time_seconds is None else event.delivery_time_seconds,
        "" if event.read_time_seconds is None else event.read_time_seconds,
        _iso(event.received_at) or "",
    ]


def _render_csv(rows: list[list]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer).writerows(rows)
    return buffer.getvalue()


async def iter_events_csv(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    start: datetime,
    end: datetime,
    chunk_size: int = CSV_CHUNK_SIZE,
) -> AsyncIterator[str]:
    """Yield CSV text (header first) for events received in [start, end), chunk by chunk."""
    yield _render_csv([list(CSV_COLUMNS)])

    filters = [MessageEvent.received_at >= start, MessageEvent.received_at < end]
    if tenant_id:
        filters.append(MessageEvent.tenant_id == tenant_id)

    offset = 0
    while True:
        result = await db.execute(
            select(MessageEvent)
            .where(and_(*filters))
            .order_by(MessageEvent.received_at.asc(), MessageEvent.id.asc())
            .offset(offset)
            .limit(chunk_size)
        )
        events = result.scalars().all()
        if not events:
            break
        yield _render_csv([_csv_row(event) for event in events])
        offset += len(events)
        if len(events) < chunk_size:
            break
