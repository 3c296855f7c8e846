"""
Delivery report ingestion - routes normalized events to the state machine.

Resolves provider message ids to MessageLog rows, drops stale reports,
and serializes work per message with a Redis lock on top of the row lock.
Each event is committed on its own so one bad status in a batch never
rolls back the others.

Reports that arrive before the send path has stored the provider message
id are kept as orphans and linked later by link_orphan_events().
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.models.message_event import MessageEvent
from deliveryledger.models.message_log import MessageLog
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.services.delivery_state import (
    ApplyResult,
    apply_event,
    event_from_row,
    store_orphan_event,
)
from deliveryledger.utils.locks import message_lock
from deliveryledger.utils.logging import mask_phone
from deliveryledger.utils.metrics import as_utc

logger = logging.getLogger(__name__)

STALE = "stale"


def is_stale(event: NormalizedEvent, max_age_days: int, now: Optional[datetime] = None) -> bool:
    if max_age_days <= 0:
        return False
    now = now or datetime.now(timezone.utc)
    return as_utc(event.event_timestamp) < now - timedelta(days=max_age_days)


async def find_message_log_id(db: AsyncSession, provider_message_id: str):
    result = await db.execute(
        select(MessageLog.id).where(MessageLog.provider_message_id == provider_message_id)
    )
    return result.scalar_one_or_none()


async def ingest_event(
    db: AsyncSession,
    event: NormalizedEvent,
    signature: Optional[str] = None,
    received_at: Optional[datetime] = None,
    max_age_days: Optional[int] = None,
) -> ApplyResult:
    """Apply one report end to end and commit it."""
    from deliveryledger.config import get_settings
    settings = get_settings()
    if max_age_days is None:
        max_age_days = settings.max_event_age_days

    if is_stale(event, max_age_days):
        logger.info(
            "Ignoring %s report for %s older than %d days",
            event.event_type, event.provider_message_id, max_age_days,
            extra={"provider": event.provider, "provider_message_id": event.provider_message_id},
        )
        return ApplyResult(status=STALE, note=f"Event older than {max_age_days} days")

    message_log_id = await find_message_log_id(db, event.provider_message_id)
    if message_log_id is None:
        logger.info(
            "No message log for provider message %s (%s, to %s) - storing as orphan",
            event.provider_message_id, event.event_type, mask_phone(event.destination),
            extra={"provider": event.provider, "provider_message_id": event.provider_message_id},
        )
        result = await store_orphan_event(db, event, signature=signature, received_at=received_at)
        await db.commit()
        return result

    async with message_lock(
        str(message_log_id),
        ttl=settings.message_lock_ttl_seconds,
        wait=settings.message_lock_wait_seconds,
    ):
        result = await apply_event(
            db, message_log_id, event, signature=signature, received_at=received_at,
        )
        await db.commit()
    return result


async def handle_delivery_report(
    db: AsyncSession,
    events: list[NormalizedEvent],
    signature: Optional[str] = None,
    received_at: Optional[datetime] = None,
    max_age_days: Optional[int] = None,
) -> list[ApplyResult]:
    """Ingest every event of one webhook call, in payload order."""
    results = []
    for event in events:
        results.append(
            await ingest_event(
                db, event, signature=signature, received_at=received_at, max_age_days=max_age_days,
            )
        )
    return results


async def link_orphan_events(
    db: AsyncSession,
    window_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Attach orphan reports received within the window to their MessageLog,
    oldest event first, and run them through the state machine.
    Returns how many orphans were linked.
    """
    from deliveryledger.config import get_settings
    settings = get_settings()
    if window_hours is None:
        window_hours = settings.orphan_link_window_hours
    now = now or datetime.now(timezone.utc)

    result = await db.execute(
        select(MessageEvent)
        .where(
            MessageEvent.message_log_id.is_(None),
            MessageEvent.received_at >= now - timedelta(hours=window_hours),
        )
        .order_by(MessageEvent.event_timestamp.asc(), MessageEvent.received_at.asc())
    )
    orphans = list(result.scalars().all())

    linked = 0
    for row in orphans:
        message_log_id = await find_message_log_id(db, row.provider_message_id)
        if message_log_id is None:
            continue

        if row.is_duplicate:
            # Repeats of an orphan are evidence only
            log = await db.get(MessageLog, message_log_id)
            row.message_log_id = log.id
            row.tenant_id = log.tenant_id
            row.process_note = f"Linked {now.isoformat()}; {row.process_note}"
            await db.commit()
        else:
            async with message_lock(
                str(message_log_id),
                ttl=settings.message_lock_ttl_seconds,
                wait=settings.message_lock_wait_seconds,
            ):
                await apply_event(
                    db, message_log_id, event_from_row(row),
                    signature=row.webhook_signature, received_at=row.received_at, row=row,
                )
                await db.commit()
        linked += 1

    if orphans:
        logger.info("Linked %d of %d orphan delivery events", linked, len(orphans))
    return linked
