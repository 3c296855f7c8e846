"""
Delivery state machine - applies normalized delivery reports to a MessageLog.

Ranks: pending(0) < sending(1) < sent(2) < delivered(3) < read(4).
failed, rejected and expired are terminal and reachable from any
non-final rank. read is the successful terminus. Once a message is final,
later reports are kept as evidence only.

Every call records exactly one MessageEvent row describing the decision,
whatever the branch: a new row, or a stored orphan row applied in place.
Reports for unknown provider message ids are kept as orphan rows with no
MessageLog until the linker attaches them. The MessageLog row is locked FOR UPDATE for the
duration, so concurrent reports for the same message serialize while
different messages proceed in parallel.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.models.campaign import Campaign
from deliveryledger.models.message_event import MessageEvent
from deliveryledger.models.message_log import MessageLog
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.utils.metrics import as_utc, seconds_between

logger = logging.getLogger(__name__)

STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "sending": 1,
    "sent": 2,
    "delivered": 3,
    "read": 4,
}
TERMINAL_STATUSES = ("failed", "rejected", "expired")
FINAL_STATUSES = ("read",) + TERMINAL_STATUSES

# event type -> (MessageLog status, timestamp column)
_TRANSITIONS: dict[str, tuple[str, str]] = {
    "sent": ("sent", "sent_at"),
    "delivered": ("delivered", "delivered_at"),
    "read": ("read", "read_at"),
    "failed": ("failed", "failed_at"),
    "rejected": ("failed", "failed_at"),
    "expired": ("expired", "failed_at"),
}

_CAMPAIGN_COUNTERS: dict[str, str] = {
    "sent": "sent_count",
    "delivered": "delivered_count",
    "read": "read_count",
    "failed": "failed_count",
    "rejected": "failed_count",
    "expired": "failed_count",
}

APPLIED = "applied"
DUPLICATE = "duplicate"
OUT_OF_ORDER = "out_of_order"
NOT_FOUND = "not_found"
IGNORED = "ignored"
ORPHAN = "orphan"


class ApplyResult(BaseModel):
    """What apply_event() decided for one report."""
    status: str  # applied, duplicate, out_of_order, not_found, ignored, orphan
    message_log_id: Optional[uuid.UUID] = None
    event_id: Optional[uuid.UUID] = None
    status_before: Optional[str] = None
    status_after: Optional[str] = None
    status_changed: bool = False
    note: Optional[str] = None


def status_rank(status: Optional[str]) -> int:
    return STATUS_RANK.get(status or "pending", 0)


def is_final(status: Optional[str]) -> bool:
    return status in FINAL_STATUSES


def event_from_row(row: MessageEvent) -> NormalizedEvent:
    """Rebuild the normalized report a stored audit row was made from."""
    return NormalizedEvent(
        provider=row.provider_name,
        event_type=row.event_type,
        raw_status=row.raw_status,
        provider_message_id=row.provider_message_id,
        provider_event_id=row.provider_event_id,
        event_timestamp=as_utc(row.event_timestamp),
        status_code=row.error_code,
        error_reason=row.error_message,
        destination=row.phone_number,
        raw_payload=row.raw_payload or {},
    )


def _event_row(
    event: NormalizedEvent,
    signature: Optional[str],
    received_at: Optional[datetime],
    now: datetime,
) -> MessageEvent:
    return MessageEvent(
        provider_name=event.provider,
        provider_message_id=event.provider_message_id,
        provider_event_id=event.provider_event_id,
        phone_number=event.destination,
        event_type=event.event_type,
        raw_status=event.raw_status,
        event_timestamp=event.event_timestamp,
        status_changed=False,
        is_duplicate=False,
        is_out_of_order=False,
        error_code=event.status_code,
        error_message=event.error_reason,
        raw_payload=event.raw_payload,
        webhook_signature=(signature or "")[:255] or None,
        received_at=received_at or now,
        processed_at=now,
    )


def _same_event(query, event: NormalizedEvent):
    query = query.where(
        MessageEvent.event_type == event.event_type,
        MessageEvent.is_duplicate == False,  # noqa: E712
    )
    if event.provider_event_id is None:
        return query.where(MessageEvent.provider_event_id.is_(None))
    return query.where(MessageEvent.provider_event_id == event.provider_event_id)


async def _find_existing_event(
    db: AsyncSession,
    message_log_id: uuid.UUID,
    event: NormalizedEvent,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[uuid.UUID]:
    query = _same_event(
        select(MessageEvent.id).where(MessageEvent.message_log_id == message_log_id), event,
    )
    if exclude_id is not None:
        query = query.where(MessageEvent.id != exclude_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


async def _bump_campaign_counter(db: AsyncSession, campaign_id: uuid.UUID, event_type: str) -> None:
    column = _CAMPAIGN_COUNTERS.get(event_type)
    if not column:
        return
    counter = getattr(Campaign, column)
    await db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values({column: counter + 1})
    )


async def store_orphan_event(
    db: AsyncSession,
    event: NormalizedEvent,
    signature: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> ApplyResult:
    """
    Keep a report whose provider message id matches no MessageLog yet.

    The row has no message_log_id and no status transition; the orphan
    linker attaches and applies it once the send path records the id.
    Repeats of an unlinked report are stored as duplicates of the first.
    """
    now = datetime.now(timezone.utc)
    result = await db.execute(
        _same_event(
            select(MessageEvent.id).where(
                MessageEvent.message_log_id.is_(None),
                MessageEvent.provider_message_id == event.provider_message_id,
            ),
            event,
        ).limit(1)
    )
    existing_id = result.scalar_one_or_none()

    row = _event_row(event, signature, received_at, now)
    if existing_id is not None:
        row.is_duplicate = True
        row.process_result = DUPLICATE
        row.process_note = f"Duplicate of orphan event {existing_id}"
    else:
        row.process_result = ORPHAN
        row.process_note = "No message log for provider message id; kept for linking"

    db.add(row)
    await db.flush()

    logger.warning(
        "Orphan %s report for provider message %s stored", event.event_type, event.provider_message_id,
        extra={"provider": event.provider, "event_type": event.event_type},
    )
    return ApplyResult(status=row.process_result, event_id=row.id, note=row.process_note)


async def apply_event(
    db: AsyncSession,
    message_log_id: uuid.UUID,
    event: NormalizedEvent,
    signature: Optional[str] = None,
    received_at: Optional[datetime] = None,
    row: Optional[MessageEvent] = None,
) -> ApplyResult:
    """
    Apply one normalized report to a message.

    Never raises for well-formed but unexpected input: duplicates, regressions
    and unmapped statuses come back as classified results. Storage errors
    propagate so the caller can roll back and alert.

    Passing `row` applies a previously stored orphan row in place instead of
    appending a new one.
    """
    result = await db.execute(
        select(MessageLog)
        .where(MessageLog.id == message_log_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    log = result.scalar_one_or_none()
    if log is None:
        logger.info(
            "Delivery report for unknown message log %s dropped", message_log_id,
            extra={"provider": event.provider, "event_type": event.event_type},
        )
        return ApplyResult(status=NOT_FOUND, message_log_id=message_log_id)

    # Looked up before the row is touched, so autoflush never writes a
    # half-linked orphan that collides with the unique index
    existing_id = await _find_existing_event(
        db, log.id, event, exclude_id=row.id if row is not None else None,
    )

    now = datetime.now(timezone.utc)
    status_before = log.status
    linked = row is not None
    if row is None:
        row = _event_row(event, signature, received_at, now)
    row.message_log_id = log.id
    row.tenant_id = log.tenant_id
    row.phone_number = event.destination or log.phone_number
    row.status_before = status_before
    row.status_after = status_before
    row.processed_at = now

    if existing_id is not None:
        row.is_duplicate = True
        row.process_result = DUPLICATE
        row.process_note = f"Duplicate of event {existing_id}"
    elif not event.is_status_event:
        row.process_result = IGNORED
        row.process_note = f"Unmapped status '{event.raw_status}' ({event.event_type})"
    elif is_final(status_before):
        row.is_out_of_order = True
        row.process_result = OUT_OF_ORDER
        row.process_note = f"Message already {status_before}; kept as evidence only"
    elif event.is_terminal or status_rank(event.event_type) > status_rank(status_before):
        row.process_note = None
        _transition(log, event, row)
        if log.campaign_id:
            await _bump_campaign_counter(db, log.campaign_id, event.event_type)
    else:
        row.is_out_of_order = True
        row.process_result = OUT_OF_ORDER
        row.process_note = f"Rank regression {status_before} -> {event.event_type}; not applied"

    if linked:
        row.process_note = f"Linked {now.isoformat()}" + (f"; {row.process_note}" if row.process_note else "")

    db.add(row)
    await db.flush()

    log_extra = {
        "provider": event.provider,
        "message_log_id": str(log.id),
        "event_type": event.event_type,
    }
    if row.process_result == APPLIED:
        logger.info("Message %s: %s -> %s", log.id, status_before, row.status_after, extra=log_extra)
    else:
        logger.info("Message %s: %s report %s", log.id, event.event_type, row.process_result, extra=log_extra)

    return ApplyResult(
        status=row.process_result,
        message_log_id=log.id,
        event_id=row.id,
        status_before=status_before,
        status_after=row.status_after,
        status_changed=row.status_changed,
        note=row.process_note,
    )


def _transition(log: MessageLog, event: NormalizedEvent, row: MessageEvent) -> None:
    """Mutate the aggregate for an accepted report and record timings on the audit row."""
    new_status, timestamp_field = _TRANSITIONS[event.event_type]
    event_time = event.event_timestamp

    if event.event_type == "delivered":
        row.delivery_time_seconds = seconds_between(log.sent_at, event_time)
    elif event.event_type == "read":
        row.read_time_seconds = seconds_between(log.delivered_at, event_time)

    log.status = new_status
    if getattr(log, timestamp_field) is None:
        setattr(log, timestamp_field, event_time)

    if event.is_terminal:
        log.status_detail = event.event_type
        if event.event_type in ("failed", "rejected"):
            log.error_code = event.status_code
            log.error_message = event.error_reason

    row.status_after = new_status
    row.status_changed = True
    row.process_result = APPLIED
