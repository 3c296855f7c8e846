"""Initial schema - delivery tracking, webhook receipts, billing read models, reconciliation.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Campaigns
    op.create_table(
        "campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("template_name", sa.String(100)),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("total_recipients", sa.Integer, server_default="0"),
        sa.Column("sent_count", sa.Integer, server_default="0"),
        sa.Column("delivered_count", sa.Integer, server_default="0"),
        sa.Column("read_count", sa.Integer, server_default="0"),
        sa.Column("failed_count", sa.Integer, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_campaigns_tenant_id", "campaigns", ["tenant_id"])
    op.create_index("ix_campaigns_status", "campaigns", ["status"])

    # Message logs
    op.create_table(
        "message_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column(
            "campaign_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("campaigns.id", ondelete="SET NULL"),
        ),
        sa.Column("idempotency_key", sa.String(100), nullable=False, unique=True),
        sa.Column("provider_message_id", sa.String(255), unique=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("provider_name", sa.String(30), nullable=False),
        sa.Column("template_name", sa.String(100)),
        sa.Column("message_type", sa.String(20), server_default="template"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("status_detail", sa.String(50)),
        sa.Column("error_code", sa.String(50)),
        sa.Column("error_message", sa.Text),
        sa.Column("quota_consumed", sa.Boolean, server_default=sa.false()),
        sa.Column("message_cost", sa.Float, server_default="0"),
        sa.Column("transaction_code", sa.String(100)),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sending_at", sa.DateTime(timezone=True)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_message_logs_tenant_id", "message_logs", ["tenant_id"])
    op.create_index("ix_message_logs_status", "message_logs", ["status"])
    op.create_index("ix_message_logs_campaign_id", "message_logs", ["campaign_id"])
    op.create_index("ix_message_logs_created_at", "message_logs", ["created_at"])

    # Message events (append-only audit trail)
    op.create_table(
        "message_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "message_log_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("message_logs.id", ondelete="RESTRICT"), nullable=True,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column("provider_name", sa.String(30), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=False),
        sa.Column("provider_event_id", sa.String(255)),
        sa.Column("phone_number", sa.String(20)),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("raw_status", sa.String(50)),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status_before", sa.String(20)),
        sa.Column("status_after", sa.String(20)),
        sa.Column("status_changed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_duplicate", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_out_of_order", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error_code", sa.String(50)),
        sa.Column("error_message", sa.Text),
        sa.Column("delivery_time_seconds", sa.Integer),
        sa.Column("read_time_seconds", sa.Integer),
        sa.Column("process_result", sa.String(20), nullable=False),
        sa.Column("process_note", sa.Text),
        sa.Column("raw_payload", postgresql.JSONB),
        sa.Column("webhook_signature", sa.String(255)),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_message_events_message_log_id", "message_events", ["message_log_id"])
    op.create_index("ix_message_events_provider_message_id", "message_events", ["provider_message_id"])
    op.create_index("ix_message_events_tenant_received", "message_events", ["tenant_id", "received_at"])
    op.create_index("ix_message_events_event_timestamp", "message_events", ["event_timestamp"])
    op.create_index(
        "ix_message_events_orphans",
        "message_events",
        ["provider_message_id", "received_at"],
        postgresql_where=sa.text("message_log_id IS NULL"),
    )
    op.create_index(
        "uq_message_events_idempotency",
        "message_events",
        ["message_log_id", "event_type", "provider_event_id"],
        unique=True,
        postgresql_where=sa.text("is_duplicate = false"),
    )

    # Webhook receipts
    op.create_table(
        "webhook_receipts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("http_method", sa.String(10), nullable=False, server_default="POST"),
        sa.Column("headers", postgresql.JSONB),
        sa.Column("raw_body", sa.Text),
        sa.Column("content_type", sa.String(100)),
        sa.Column("signature", sa.String(255)),
        sa.Column("signature_header", sa.String(50)),
        sa.Column("source_ip", sa.String(45)),
        sa.Column("user_agent", sa.String(255)),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("detected_provider", sa.String(30)),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("response_code", sa.Integer),
        sa.Column("response_message", sa.Text),
        sa.Column("signature_valid", sa.Boolean),
        sa.Column("parsed_successfully", sa.Boolean),
        sa.Column("message_event_id", postgresql.UUID(as_uuid=True)),
        sa.Column("processing_time_ms", sa.Integer),
        sa.Column("finalized_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_webhook_receipts_provider", "webhook_receipts", ["provider"])
    op.create_index("ix_webhook_receipts_received_at", "webhook_receipts", ["received_at"])
    op.create_index("ix_webhook_receipts_message_event_id", "webhook_receipts", ["message_event_id"])
    op.create_index("ix_webhook_receipts_processing_status", "webhook_receipts", ["processing_status"])

    # Billing read models
    op.create_table(
        "ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("transaction_code", sa.String(100), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("entry_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("balance_before", sa.Float),
        sa.Column("balance_after", sa.Float),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True)),
        sa.Column("reference_id", sa.String(100)),
        sa.Column("description", sa.Text),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_ledger_entries_tenant_created", "ledger_entries", ["tenant_id", "created_at"])
    op.create_index("ix_ledger_entries_transaction_code", "ledger_entries", ["transaction_code"])
    op.create_index("ix_ledger_entries_invoice_id", "ledger_entries", ["invoice_id"])

    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("invoice_number", sa.String(50), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="unpaid"),
        sa.Column("total_amount", sa.Float, nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])
    op.create_index("ix_invoices_status_paid_at", "invoices", ["status", "paid_at"])

    op.create_table(
        "tenant_wallets",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("balance", sa.Float, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Reconciliation
    op.create_table(
        "reconciliation_reports",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("period_type", sa.String(10), nullable=False),
        sa.Column("report_date", sa.Date, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True)),
        sa.Column("period_end", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("total_invoices_checked", sa.Integer, server_default="0"),
        sa.Column("total_messages_checked", sa.Integer, server_default="0"),
        sa.Column("total_ledger_entries_checked", sa.Integer, server_default="0"),
        sa.Column("invoice_anomalies", sa.Integer, server_default="0"),
        sa.Column("message_anomalies", sa.Integer, server_default="0"),
        sa.Column("balance_anomalies", sa.Integer, server_default="0"),
        sa.Column("total_anomalies", sa.Integer, server_default="0"),
        sa.Column("total_invoice_amount", sa.Float, server_default="0"),
        sa.Column("total_ledger_credits", sa.Float, server_default="0"),
        sa.Column("total_ledger_debits", sa.Float, server_default="0"),
        sa.Column("summary", postgresql.JSONB),
        sa.Column("error_message", sa.Text),
        sa.Column("execution_duration_seconds", sa.Float),
        sa.Column("executed_by", sa.String(50), server_default="manual"),
        sa.Column("is_superseded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("superseded_by_id", postgresql.UUID(as_uuid=True)),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_reconciliation_reports_status", "reconciliation_reports", ["status"])
    op.create_index(
        "uq_reconciliation_reports_period",
        "reconciliation_reports",
        ["period_type", "report_date"],
        unique=True,
        postgresql_where=sa.text("is_superseded = false"),
    )

    op.create_table(
        "reconciliation_anomalies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "report_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reconciliation_reports.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("anomaly_type", sa.String(40), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("entity_type", sa.String(30)),
        sa.Column("entity_id", sa.String(100)),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True)),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("expected_amount", sa.Float),
        sa.Column("actual_amount", sa.Float),
        sa.Column("difference_amount", sa.Float),
        sa.Column("entity_data", postgresql.JSONB),
        sa.Column("resolution_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("resolution_notes", sa.Text),
        sa.Column("review_started_by", sa.String(100)),
        sa.Column("review_started_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", sa.String(100)),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_reconciliation_anomalies_report_id", "reconciliation_anomalies", ["report_id"])
    op.create_index("ix_reconciliation_anomalies_severity", "reconciliation_anomalies", ["severity"])
    op.create_index(
        "ix_reconciliation_anomalies_resolution_status", "reconciliation_anomalies", ["resolution_status"]
    )
    op.create_index("ix_reconciliation_anomalies_tenant_id", "reconciliation_anomalies", ["tenant_id"])


def downgrade() -> None:
    op.drop_table("reconciliation_anomalies")
    op.drop_table("reconciliation_reports")
    op.drop_table("tenant_wallets")
    op.drop_table("invoices")
    op.drop_table("ledger_entries")
    op.drop_table("webhook_receipts")
    op.drop_table("message_events")
    op.drop_table("message_logs")
    op.drop_table("campaigns")
