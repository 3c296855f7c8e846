"""
Webhook receipt - forensic record of every inbound webhook call.
Written before signature verification or parsing so forged and malformed
calls are captured too. Outcome fields are patched exactly once.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from deliveryledger.database import Base


class WebhookReceipt(Base):
    __tablename__ = "webhook_receipts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Request identity
    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # route hint
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    http_method: Mapped[str] = mapped_column(String(10), default="POST", nullable=False)

    # Payload, stored verbatim
    headers: Mapped[Optional[dict]] = mapped_column(JSONB)
    raw_body: Mapped[Optional[str]] = mapped_column(Text)
    content_type: Mapped[Optional[str]] = mapped_column(String(100))
    signature: Mapped[Optional[str]] = mapped_column(String(255))
    signature_header: Mapped[Optional[str]] = mapped_column(String(50))

    # Provenance
    source_ip: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    # Outcome (set once by finalize_receipt)
    detected_provider: Mapped[Optional[str]] = mapped_column(String(30))
    processing_status: Mapped[str] = mapped_column(
        String(20), default="received", nullable=False
    )  # received, completed, rejected, failed
    response_code: Mapped[Optional[int]] = mapped_column(Integer)
    response_message: Mapped[Optional[str]] = mapped_column(Text)
    signature_valid: Mapped[Optional[bool]] = mapped_column(Boolean)  # None = no secret configured
    parsed_successfully: Mapped[Optional[bool]] = mapped_column(Boolean)
    message_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_webhook_receipts_provider", "provider"),
        Index("ix_webhook_receipts_received_at", "received_at"),
        Index("ix_webhook_receipts_message_event_id", "message_event_id"),
        Index("ix_webhook_receipts_processing_status", "processing_status"),
    )

    def __repr__(self) -> str:
        return f"<WebhookReceipt {self.provider} {self.processing_status} ({self.response_code})>"
