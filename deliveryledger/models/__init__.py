"""
Database models - import all models here so Alembic can discover them.
"""
from deliveryledger.models.campaign import Campaign
from deliveryledger.models.message_log import MessageLog
from deliveryledger.models.message_event import MessageEvent
from deliveryledger.models.webhook_receipt import WebhookReceipt
from deliveryledger.models.billing import LedgerEntry, Invoice, TenantWallet
from deliveryledger.models.reconciliation import ReconciliationReport, ReconciliationAnomaly

__all__ = [
    "Campaign",
    "MessageLog",
    "MessageEvent",
    "WebhookReceipt",
    "LedgerEntry",
    "Invoice",
    "TenantWallet",
    "ReconciliationReport",
    "ReconciliationAnomaly",
]
