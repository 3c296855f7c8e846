"""
Billing read models - ledger entries, invoices and tenant wallets.
Owned and written by the billing service; this service only reads
them for reconciliation.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from deliveryledger.database import Base


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    transaction_code: Mapped[str] = mapped_column(String(100), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # credit, debit
    entry_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # topup, message, refund, adjustment
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    balance_before: Mapped[Optional[float]] = mapped_column(Float)
    balance_after: Mapped[Optional[float]] = mapped_column(Float)

    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    reference_id: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_ledger_entries_tenant_created", "tenant_id", "created_at"),
        Index("ix_ledger_entries_transaction_code", "transaction_code"),
        Index("ix_ledger_entries_invoice_id", "invoice_id"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.transaction_code} {self.direction} {self.amount}>"


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), default="unpaid", nullable=False
    )  # unpaid, paid, expired, cancelled
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_invoices_tenant_id", "tenant_id"),
        Index("ix_invoices_status_paid_at", "status", "paid_at"),
    )

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} ({self.status})>"


class TenantWallet(Base):
    __tablename__ = "tenant_wallets"

    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    balance: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<TenantWallet {self.tenant_id} balance={self.balance}>"
