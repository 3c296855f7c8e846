"""
MessageLog - one row per outbound message, the aggregate the delivery
state machine mutates. Status only moves forward in rank; terminal
states (failed, expired) and read are never left.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from deliveryledger.database import Base


class MessageLog(Base):
    __tablename__ = "message_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="SET NULL")
    )

    # Identity
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)

    # Routing
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_name: Mapped[str] = mapped_column(String(30), nullable=False)
    template_name: Mapped[Optional[str]] = mapped_column(String(100))
    message_type: Mapped[str] = mapped_column(String(20), default="template")

    # State
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, sending, sent, delivered, read, failed, expired
    status_detail: Mapped[Optional[str]] = mapped_column(String(50))  # e.g. "rejected"
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Financial
    quota_consumed: Mapped[bool] = mapped_column(Boolean, default=False)
    message_cost: Mapped[float] = mapped_column(Float, default=0.0)
    transaction_code: Mapped[Optional[str]] = mapped_column(String(100))

    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)

    # Lifecycle timestamps (each written at most once)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    sending_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_message_logs_tenant_id", "tenant_id"),
        Index("ix_message_logs_status", "status"),
        Index("ix_message_logs_campaign_id", "campaign_id"),
        Index("ix_message_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<MessageLog {self.provider_message_id or self.idempotency_key} ({self.status})>"
