"""
Reconciliation reports and the anomalies they raise.
A report is written during one run and frozen once finalized.
Anomalies are immutable apart from their resolution fields.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Float, Boolean, Date, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from deliveryledger.database import Base


class ReconciliationReport(Base):
    __tablename__ = "reconciliation_reports"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    period_type: Mapped[str] = mapped_column(String(10), nullable=False)  # daily, weekly, monthly
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    status: Mapped[str] = mapped_column(
        String(20), default="in_progress", nullable=False
    )  # in_progress, completed, failed, anomaly_detected

    # Counters
    total_invoices_checked: Mapped[int] = mapped_column(Integer, default=0)
    total_messages_checked: Mapped[int] = mapped_column(Integer, default=0)
    total_ledger_entries_checked: Mapped[int] = mapped_column(Integer, default=0)
    invoice_anomalies: Mapped[int] = mapped_column(Integer, default=0)
    message_anomalies: Mapped[int] = mapped_column(Integer, default=0)
    balance_anomalies: Mapped[int] = mapped_column(Integer, default=0)
    total_anomalies: Mapped[int] = mapped_column(Integer, default=0)

    # Totals
    total_invoice_amount: Mapped[float] = mapped_column(Float, default=0.0)
    total_ledger_credits: Mapped[float] = mapped_column(Float, default=0.0)
    total_ledger_debits: Mapped[float] = mapped_column(Float, default=0.0)

    summary: Mapped[Optional[dict]] = mapped_column(JSONB)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    execution_duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    executed_by: Mapped[str] = mapped_column(String(50), default="manual")  # manual, scheduler, cli

    # Forced reruns supersede, never delete
    is_superseded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    superseded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Anomalies are always queried explicitly (list_anomalies); never lazy-loaded
    anomalies: Mapped[list["ReconciliationAnomaly"]] = relationship(back_populates="report", lazy="raise")

    __table_args__ = (
        Index("ix_reconciliation_reports_status", "status"),
        Index(
            "uq_reconciliation_reports_period",
            "period_type", "report_date",
            unique=True,
            postgresql_where=text("is_superseded = false"),
            sqlite_where=text("is_superseded = 0"),
        ),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationReport {self.period_type} {self.report_date} ({self.status})>"


class ReconciliationAnomaly(Base):
    __tablename__ = "reconciliation_anomalies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("reconciliation_reports.id", ondelete="CASCADE"), nullable=False
    )

    # Classification
    anomaly_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)  # critical, high, medium, low

    # Subject
    entity_type: Mapped[Optional[str]] = mapped_column(String(30))  # invoice, ledger_entry, message_log, tenant
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    description: Mapped[str] = mapped_column(Text, nullable=False)
    expected_amount: Mapped[Optional[float]] = mapped_column(Float)
    actual_amount: Mapped[Optional[float]] = mapped_column(Float)
    difference_amount: Mapped[Optional[float]] = mapped_column(Float)
    entity_data: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Resolution
    resolution_status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, investigating, resolved, false_positive, accepted_risk
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text)
    review_started_by: Mapped[Optional[str]] = mapped_column(String(100))
    review_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    report: Mapped["ReconciliationReport"] = relationship(back_populates="anomalies")

    __table_args__ = (
        Index("ix_reconciliation_anomalies_report_id", "report_id"),
        Index("ix_reconciliation_anomalies_severity", "severity"),
        Index("ix_reconciliation_anomalies_resolution_status", "resolution_status"),
        Index("ix_reconciliation_anomalies_tenant_id", "tenant_id"),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationAnomaly {self.anomaly_type} ({self.severity}, {self.resolution_status})>"
