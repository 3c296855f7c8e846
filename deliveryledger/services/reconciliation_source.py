"""
Reconciliation inputs - point-in-time snapshot of ledger, invoice and
message-debit records for one period.

The engine depends on the abstract ReconciliationSource only, so the
billing collaborator can be swapped (or faked in tests) without touching
the checks.
"""
import logging
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from deliveryledger.models.billing import Invoice, LedgerEntry, TenantWallet
from deliveryledger.models.message_log import MessageLog

logger = logging.getLogger(__name__)

REFUND_CODE_PATTERN = re.compile(r"^REFUND-(?P<original>.+)-(?P<ts>\d+)$")


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class LedgerRecord(_Record):
    id: uuid.UUID
    tenant_id: uuid.UUID
    transaction_code: str
    direction: str  # credit, debit
    entry_type: str  # topup, message, refund, adjustment
    amount: float
    balance_before: Optional[float] = None
    balance_after: Optional[float] = None
    invoice_id: Optional[uuid.UUID] = None
    reference_id: Optional[str] = None
    created_at: datetime

    @property
    def refunded_code(self) -> Optional[str]:
        """Transaction code a refund reverses, from reference_id or REFUND-{code}-{ts}."""
        if self.entry_type != "refund":
            return None
        if self.reference_id:
            return self.reference_id
        match = REFUND_CODE_PATTERN.match(self.transaction_code)
        return match.group("original") if match else None


class InvoiceRecord(_Record):
    id: uuid.UUID
    tenant_id: uuid.UUID
    invoice_number: str
    status: str
    total_amount: float
    paid_at: Optional[datetime] = None


class MessageRecord(_Record):
    id: uuid.UUID
    tenant_id: Optional[uuid.UUID] = None
    status: str
    quota_consumed: Optional[bool] = False
    message_cost: Optional[float] = 0.0
    transaction_code: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class ReconciliationData(BaseModel):
    """Everything the checks look at for one period."""
    period_start: datetime
    period_end: datetime
    ledger_entries: list[LedgerRecord] = Field(default_factory=list)
    invoices: list[InvoiceRecord] = Field(default_factory=list)
    messages: list[MessageRecord] = Field(default_factory=list)
    tenant_balances: dict[uuid.UUID, float] = Field(default_factory=dict)
    # Lookups outside the period window
    known_invoice_ids: set[uuid.UUID] = Field(default_factory=set)
    known_debit_codes: set[str] = Field(default_factory=set)

    @property
    def message_debits(self) -> list[MessageRecord]:
        return [m for m in self.messages if m.quota_consumed and (m.message_cost or 0) > 0]


class ReconciliationSource(ABC):
    """Where reconciliation reads its period snapshot from."""

    @abstractmethod
    async def load_period(self, start: datetime, end: datetime) -> ReconciliationData:
        ...


class SqlReconciliationSource(ReconciliationSource):
    """
    Reads billing and message tables in one transaction at the given
    isolation level, so a run never counts half-applied writes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        isolation_level: Optional[str] = "REPEATABLE READ",
    ):
        self._session_factory = session_factory
        self._isolation_level = isolation_level

    async def load_period(self, start: datetime, end: datetime) -> ReconciliationData:
        async with self._session_factory() as session:
            if self._isolation_level:
                await session.connection(
                    execution_options={"isolation_level": self._isolation_level}
                )

            entries = (await session.execute(
                select(LedgerEntry)
                .where(and_(LedgerEntry.created_at >= start, LedgerEntry.created_at < end))
                .order_by(LedgerEntry.created_at.asc())
            )).scalars().all()

            invoices = (await session.execute(
                select(Invoice).where(
                    and_(
                        Invoice.status == "paid",
                        Invoice.paid_at >= start,
                        Invoice.paid_at < end,
                    )
                )
            )).scalars().all()

            messages = (await session.execute(
                select(MessageLog).where(
                    and_(MessageLog.created_at >= start, MessageLog.created_at < end)
                )
            )).scalars().all()

            wallets = (await session.execute(select(TenantWallet))).scalars().all()

            ledger = [LedgerRecord.model_validate(e) for e in entries]

            referenced_invoices = {e.invoice_id for e in ledger if e.invoice_id}
            known_invoice_ids: set[uuid.UUID] = set()
            if referenced_invoices:
                known_invoice_ids = set((await session.execute(
                    select(Invoice.id).where(Invoice.id.in_(referenced_invoices))
                )).scalars().all())

            refunded_codes = {e.refunded_code for e in ledger if e.refunded_code}
            known_debit_codes: set[str] = set()
            if refunded_codes:
                known_debit_codes = set((await session.execute(
                    select(LedgerEntry.transaction_code).where(
                        and_(
                            LedgerEntry.transaction_code.in_(refunded_codes),
                            LedgerEntry.direction == "debit",
                        )
                    )
                )).scalars().all())

        logger.info(
            "Loaded reconciliation snapshot %s - %s: %d ledger entries, %d invoices, %d messages",
            start.isoformat(), end.isoformat(), len(ledger), len(invoices), len(messages),
        )
        return ReconciliationData(
            period_start=start,
            period_end=end,
            ledger_entries=ledger,
            invoices=[InvoiceRecord.model_validate(i) for i in invoices],
            messages=[MessageRecord.model_validate(m) for m in messages],
            tenant_balances={w.tenant_id: w.balance for w in wallets},
            known_invoice_ids=known_invoice_ids,
            known_debit_codes=known_debit_codes,
        )
