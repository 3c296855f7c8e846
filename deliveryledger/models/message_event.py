"""
MessageEvent - append-only audit row, one per delivery report applied
(including duplicates and out-of-order arrivals). Dispute evidence.
Orphan rows are written once more, when the linker attaches them.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from deliveryledger.database import Base


class MessageEvent(Base):
    __tablename__ = "message_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # NULL while the report is an orphan (no MessageLog carries its provider message id yet)
    message_log_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("message_logs.id", ondelete="RESTRICT"), nullable=True
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    # Provider reference
    provider_name: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255))
    phone_number: Mapped[Optional[str]] = mapped_column(String(20))

    # Classification
    event_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # sent, delivered, read, failed, rejected, expired (anything else is ignored)
    raw_status: Mapped[Optional[str]] = mapped_column(String(50))
    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Transition record
    status_before: Mapped[Optional[str]] = mapped_column(String(20))
    status_after: Mapped[Optional[str]] = mapped_column(String(20))
    status_changed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_out_of_order: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Diagnostics
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    delivery_time_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    read_time_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    process_result: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # applied, duplicate, out_of_order, ignored, orphan
    process_note: Mapped[Optional[str]] = mapped_column(Text)

    # Evidence
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSONB)
    webhook_signature: Mapped[Optional[str]] = mapped_column(String(255))
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_message_events_message_log_id", "message_log_id"),
        Index("ix_message_events_provider_message_id", "provider_message_id"),
        Index("ix_message_events_tenant_received", "tenant_id", "received_at"),
        Index("ix_message_events_event_timestamp", "event_timestamp"),
        Index(
            "ix_message_events_orphans",
            "provider_message_id", "received_at",
            postgresql_where=text("message_log_id IS NULL"),
            sqlite_where=text("message_log_id IS NULL"),
        ),
        # At most one effective row per logical event
        Index(
            "uq_message_events_idempotency",
            "message_log_id", "event_type", "provider_event_id",
            unique=True,
            postgresql_where=text("is_duplicate = false"),
            sqlite_where=text("is_duplicate = 0"),
        ),
    )

    def __repr__(self) -> str:
        return f"<MessageEvent {self.event_type} {self.process_result} log={self.message_log_id}>"
