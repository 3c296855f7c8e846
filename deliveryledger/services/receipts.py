"""
Webhook receipt store - forensic log of every inbound webhook call.

record_receipt() runs before verification or parsing; the caller commits it
straight away so the row survives whatever happens next. finalize_receipt()
attaches the outcome exactly once. Receipts are never deleted.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.models.webhook_receipt import WebhookReceipt
from deliveryledger.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

# Credentials are never persisted verbatim
MASKED_HEADERS = ("authorization", "cookie", "x-api-key")
MAX_HEADER_VALUE_LENGTH = 1024


class ReceiptNotFoundError(Exception):
    pass


class ReceiptAlreadyFinalizedError(Exception):
    """finalize_receipt() was called twice for the same receipt."""
    pass


def sanitize_headers(headers: Mapping[str, str]) -> dict:
    clean = {}
    for key, value in headers.items():
        lowered = key.lower()
        if lowered in MASKED_HEADERS:
            clean[lowered] = "***"
        else:
            clean[lowered] = str(value)[:MAX_HEADER_VALUE_LENGTH]
    return clean


async def record_receipt(
    db: AsyncSession,
    provider: str,
    endpoint: str,
    headers: Mapping[str, str],
    raw_body: bytes,
    source_ip: Optional[str] = None,
    http_method: str = "POST",
    signature: Optional[str] = None,
    signature_header: Optional[str] = None,
) -> WebhookReceipt:
    """Write the raw call. Flushes only; the caller owns the commit."""
    lowered = {k.lower(): v for k, v in headers.items()}
    receipt = WebhookReceipt(
        provider=provider,
        endpoint=endpoint,
        http_method=http_method,
        headers=sanitize_headers(headers),
        raw_body=raw_body.decode("utf-8", errors="replace"),
        content_type=lowered.get("content-type"),
        signature=(signature or "")[:255] or None,
        signature_header=signature_header,
        source_ip=source_ip,
        user_agent=(lowered.get("user-agent") or "")[:255] or None,
        correlation_id=get_correlation_id(),
        processing_status="received",
        received_at=datetime.now(timezone.utc),
    )
    db.add(receipt)
    await db.flush()
    logger.debug(
        "Webhook receipt recorded: %s %s", provider, endpoint,
        extra={"provider": provider, "receipt_id": str(receipt.id)},
    )
    return receipt


async def finalize_receipt(
    db: AsyncSession,
    receipt_id: uuid.UUID,
    response_code: int,
    response_message: str,
    parsed_successfully: bool,
    signature_valid: Optional[bool],
    linked_event_id: Optional[uuid.UUID] = None,
    processing_status: Optional[str] = None,
    detected_provider: Optional[str] = None,
    processing_time_ms: Optional[int] = None,
) -> WebhookReceipt:
    """Attach the outcome to a receipt. A second call raises ReceiptAlreadyFinalizedError."""
    receipt = await db.get(WebhookReceipt, receipt_id)
    if receipt is None:
        raise ReceiptNotFoundError(f"Webhook receipt {receipt_id} not found")
    if receipt.finalized_at is not None:
        raise ReceiptAlreadyFinalizedError(f"Webhook receipt {receipt_id} already finalized")

    if processing_status is None:
        if response_code == 401:
            processing_status = "rejected"
        elif response_code >= 400:
            processing_status = "failed"
        else:
            processing_status = "completed"

    receipt.response_code = response_code
    receipt.response_message = (response_message or "")[:2000]
    receipt.parsed_successfully = parsed_successfully
    receipt.signature_valid = signature_valid
    receipt.message_event_id = linked_event_id
    receipt.processing_status = processing_status
    receipt.detected_provider = detected_provider
    receipt.processing_time_ms = processing_time_ms
    receipt.finalized_at = datetime.now(timezone.utc)
    await db.flush()
    return receipt


async def find_receipts_for_message(
    db: AsyncSession,
    provider_message_id: str,
    event_ids: Optional[list[uuid.UUID]] = None,
    limit: int = 100,
) -> list[WebhookReceipt]:
    """Receipts linked to any of the given events, or whose raw body mentions the message id."""
    conditions = [WebhookReceipt.raw_body.contains(provider_message_id, autoescape=True)]
    if event_ids:
        conditions.append(WebhookReceipt.message_event_id.in_(event_ids))

    result = await db.execute(
        select(WebhookReceipt)
        .where(or_(*conditions))
        .order_by(WebhookReceipt.received_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
