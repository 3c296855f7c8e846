"""
Reconciliation checks - pure functions over a ReconciliationData snapshot.

Each check returns AnomalyFinding objects; severity comes from a fixed
table keyed by anomaly type, never from the check itself.
"""
import re
import uuid
from collections import defaultdict
from typing import Callable, Optional

from pydantic import BaseModel

from deliveryledger.services.reconciliation_source import (
    LedgerRecord,
    ReconciliationData,
)
from deliveryledger.utils.metrics import as_utc

AMOUNT_TOLERANCE = 0.01
MESSAGE_CODE_PATTERN = re.compile(r"^MSG-\d{8}-\d{6}-[A-Z0-9]+$")

ANOMALY_SEVERITY: dict[str, str] = {
    "invoice_ledger_mismatch": "critical",
    "negative_balance": "critical",
    "duplicate_transaction": "critical",
    "amount_mismatch": "high",
    "message_debit_mismatch": "medium",
    "refund_missing": "medium",
    "orphaned_ledger_entry": "medium",
    "timing_anomaly": "low",
}
SEVERITIES = ("critical", "high", "medium", "low")

# Report counter each finding is tallied under
CATEGORY_INVOICE = "invoice"
CATEGORY_MESSAGE = "message"
CATEGORY_BALANCE = "balance"


def severity_for(anomaly_type: str) -> str:
    return ANOMALY_SEVERITY[anomaly_type]


class AnomalyFinding(BaseModel):
    anomaly_type: str
    category: str
    description: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    tenant_id: Optional[uuid.UUID] = None
    expected_amount: Optional[float] = None
    actual_amount: Optional[float] = None
    entity_data: Optional[dict] = None

    @property
    def severity(self) -> str:
        return severity_for(self.anomaly_type)

    @property
    def difference_amount(self) -> Optional[float]:
        if self.expected_amount is None or self.actual_amount is None:
            return None
        return round(self.actual_amount - self.expected_amount, 2)


def _amounts_differ(a: float, b: float) -> bool:
    return abs((a or 0) - (b or 0)) > AMOUNT_TOLERANCE


def _entry_data(entry: LedgerRecord) -> dict:
    return {
        "transaction_code": entry.transaction_code,
        "direction": entry.direction,
        "entry_type": entry.entry_type,
        "amount": entry.amount,
        "reference_id": entry.reference_id,
        "created_at": entry.created_at.isoformat(),
    }


def check_invoices(data: ReconciliationData) -> list[AnomalyFinding]:
    """Every paid invoice must be matched by top-up credits for the same total."""
    credits_by_invoice: dict[uuid.UUID, list[LedgerRecord]] = defaultdict(list)
    for entry in data.ledger_entries:
        if entry.direction == "credit" and entry.invoice_id:
            credits_by_invoice[entry.invoice_id].append(entry)

    findings = []
    for invoice in data.invoices:
        credits = credits_by_invoice.get(invoice.id, [])
        credited = round(sum(c.amount for c in credits), 2)
        if not credits:
            findings.append(AnomalyFinding(
                anomaly_type="invoice_ledger_mismatch",
                category=CATEGORY_INVOICE,
                description=f"Paid invoice {invoice.invoice_number} has no ledger credit",
                entity_type="invoice",
                entity_id=str(invoice.id),
                tenant_id=invoice.tenant_id,
                expected_amount=invoice.total_amount,
                actual_amount=0.0,
                entity_data={"invoice_number": invoice.invoice_number},
            ))
        elif _amounts_differ(credited, invoice.total_amount):
            findings.append(AnomalyFinding(
                anomaly_type="amount_mismatch",
                category=CATEGORY_INVOICE,
                description=(
                    f"Invoice {invoice.invoice_number} total {invoice.total_amount:.2f} "
                    f"but ledger credited {credited:.2f}"
                ),
                entity_type="invoice",
                entity_id=str(invoice.id),
                tenant_id=invoice.tenant_id,
                expected_amount=invoice.total_amount,
                actual_amount=credited,
                entity_data={
                    "invoice_number": invoice.invoice_number,
                    "credit_codes": [c.transaction_code for c in credits],
                },
            ))
    return findings


def check_orphaned_credits(data: ReconciliationData) -> list[AnomalyFinding]:
    """Top-up credits must point at an invoice that exists."""
    findings = []
    for entry in data.ledger_entries:
        if entry.direction != "credit" or entry.entry_type != "topup":
            continue
        if entry.invoice_id and entry.invoice_id in data.known_invoice_ids:
            continue
        reason = "references missing invoice" if entry.invoice_id else "has no invoice"
        findings.append(AnomalyFinding(
            anomaly_type="orphaned_ledger_entry",
            category=CATEGORY_INVOICE,
            description=f"Top-up credit {entry.transaction_code} {reason}",
            entity_type="ledger_entry",
            entity_id=str(entry.id),
            tenant_id=entry.tenant_id,
            actual_amount=entry.amount,
            entity_data=_entry_data(entry),
        ))
    return findings


def check_message_debits(data: ReconciliationData) -> list[AnomalyFinding]:
    """Charged messages and message debits must pair up one to one, for the same amount."""
    debits_by_code: dict[str, LedgerRecord] = {}
    for entry in data.ledger_entries:
        if entry.direction == "debit" and entry.entry_type == "message":
            debits_by_code[entry.transaction_code] = entry

    findings = []
    matched_codes = set()
    for message in data.message_debits:
        debit = debits_by_code.get(message.transaction_code or "")
        if debit is None:
            findings.append(AnomalyFinding(
                anomaly_type="message_debit_mismatch",
                category=CATEGORY_MESSAGE,
                description=f"Charged message {message.id} has no ledger debit",
                entity_type="message_log",
                entity_id=str(message.id),
                tenant_id=message.tenant_id,
                expected_amount=message.message_cost,
                actual_amount=0.0,
                entity_data={"transaction_code": message.transaction_code, "status": message.status},
            ))
            continue
        matched_codes.add(debit.transaction_code)
        if _amounts_differ(debit.amount, message.message_cost):
            findings.append(AnomalyFinding(
                anomaly_type="amount_mismatch",
                category=CATEGORY_MESSAGE,
                description=(
                    f"Message {message.id} cost {message.message_cost:.2f} "
                    f"but ledger debited {debit.amount:.2f}"
                ),
                entity_type="message_log",
                entity_id=str(message.id),
                tenant_id=message.tenant_id,
                expected_amount=message.message_cost,
                actual_amount=debit.amount,
                entity_data=_entry_data(debit),
            ))

    for code, debit in debits_by_code.items():
        if not MESSAGE_CODE_PATTERN.match(code):
            findings.append(AnomalyFinding(
                anomaly_type="message_debit_mismatch",
                category=CATEGORY_MESSAGE,
                description=f"Message debit {code} has a malformed transaction code",
                entity_type="ledger_entry",
                entity_id=str(debit.id),
                tenant_id=debit.tenant_id,
                actual_amount=debit.amount,
                entity_data=_entry_data(debit),
            ))
        elif code not in matched_codes:
            findings.append(AnomalyFinding(
                anomaly_type="orphaned_ledger_entry",
                category=CATEGORY_MESSAGE,
                description=f"Message debit {code} matches no charged message in the period",
                entity_type="ledger_entry",
                entity_id=str(debit.id),
                tenant_id=debit.tenant_id,
                actual_amount=debit.amount,
                entity_data=_entry_data(debit),
            ))
    return findings


def check_refunds(data: ReconciliationData) -> list[AnomalyFinding]:
    """Every refund must reverse a debit that exists."""
    period_debits = {e.transaction_code for e in data.ledger_entries if e.direction == "debit"}
    findings = []
    for entry in data.ledger_entries:
        if entry.entry_type != "refund":
            continue
        original = entry.refunded_code
        if original and (original in period_debits or original in data.known_debit_codes):
            continue
        findings.append(AnomalyFinding(
            anomaly_type="refund_missing",
            category=CATEGORY_BALANCE,
            description=(
                f"Refund {entry.transaction_code} reverses "
                f"{original or 'an unidentifiable transaction'} with no original debit"
            ),
            entity_type="ledger_entry",
            entity_id=str(entry.id),
            tenant_id=entry.tenant_id,
            actual_amount=entry.amount,
            entity_data=_entry_data(entry),
        ))
    return findings


def check_balances(data: ReconciliationData) -> list[AnomalyFinding]:
    """Wallets never go negative, and each entry moves the balance by exactly its amount."""
    findings = []
    for tenant_id, balance in data.tenant_balances.items():
        if balance < 0:
            findings.append(AnomalyFinding(
                anomaly_type="negative_balance",
                category=CATEGORY_BALANCE,
                description=f"Tenant {tenant_id} wallet balance is {balance:.2f}",
                entity_type="tenant",
                entity_id=str(tenant_id),
                tenant_id=tenant_id,
                expected_amount=0.0,
                actual_amount=balance,
            ))

    for entry in data.ledger_entries:
        if entry.balance_before is None or entry.balance_after is None:
            continue
        sign = 1 if entry.direction == "credit" else -1
        expected = round(entry.balance_before + sign * entry.amount, 2)
        if _amounts_differ(expected, entry.balance_after):
            findings.append(AnomalyFinding(
                anomaly_type="amount_mismatch",
                category=CATEGORY_BALANCE,
                description=(
                    f"Entry {entry.transaction_code}: balance {entry.balance_before:.2f} "
                    f"{'+' if sign > 0 else '-'} {entry.amount:.2f} should be {expected:.2f}, "
                    f"recorded {entry.balance_after:.2f}"
                ),
                entity_type="ledger_entry",
                entity_id=str(entry.id),
                tenant_id=entry.tenant_id,
                expected_amount=expected,
                actual_amount=entry.balance_after,
                entity_data=_entry_data(entry),
            ))
    return findings


def check_duplicates(data: ReconciliationData, window_seconds: int = 60) -> list[AnomalyFinding]:
    """
    Duplicate transactions: a transaction code used more than once, or the
    same tenant/reference/direction/amount repeated inside one time bucket.
    """
    findings = []
    flagged: set[uuid.UUID] = set()

    by_code: dict[str, list[LedgerRecord]] = defaultdict(list)
    for entry in data.ledger_entries:
        by_code[entry.transaction_code].append(entry)
    for code, entries in by_code.items():
        if len(entries) > 1:
            flagged.update(e.id for e in entries)
            findings.append(_duplicate_finding(entries, f"Transaction code {code} used {len(entries)} times"))

    window = max(window_seconds, 1)
    by_bucket: dict[tuple, list[LedgerRecord]] = defaultdict(list)
    for entry in data.ledger_entries:
        if not entry.reference_id:
            continue
        bucket = int(as_utc(entry.created_at).timestamp() // window)
        key = (entry.tenant_id, entry.reference_id, entry.direction, round(entry.amount, 2), bucket)
        by_bucket[key].append(entry)
    for (_, reference, direction, amount, _), entries in by_bucket.items():
        if len(entries) > 1 and not all(e.id in flagged for e in entries):
            flagged.update(e.id for e in entries)
            findings.append(_duplicate_finding(
                entries,
                f"{len(entries)} {direction} entries of {amount:.2f} for reference {reference} within {window}s",
            ))
    return findings


def _duplicate_finding(entries: list[LedgerRecord], description: str) -> AnomalyFinding:
    first = entries[0]
    return AnomalyFinding(
        anomaly_type="duplicate_transaction",
        category=CATEGORY_BALANCE,
        description=description,
        entity_type="ledger_entry",
        entity_id=str(first.id),
        tenant_id=first.tenant_id,
        expected_amount=first.amount,
        actual_amount=round(sum(e.amount for e in entries), 2),
        entity_data={"entries": [_entry_data(e) for e in entries]},
    )


def check_timing(data: ReconciliationData) -> list[AnomalyFinding]:
    """Message timestamps must follow causal order: created <= sent <= delivered <= read."""
    findings = []
    for message in data.messages:
        chain = [
            ("created_at", as_utc(message.created_at)),
            ("sent_at", as_utc(message.sent_at)),
            ("delivered_at", as_utc(message.delivered_at)),
            ("read_at", as_utc(message.read_at)),
        ]
        present = [(name, ts) for name, ts in chain if ts is not None]
        violations = [
            f"{later} before {earlier}"
            for (earlier, earlier_ts), (later, later_ts) in zip(present, present[1:])
            if later_ts < earlier_ts
        ]
        if violations:
            findings.append(AnomalyFinding(
                anomaly_type="timing_anomaly",
                category=CATEGORY_MESSAGE,
                description=f"Message {message.id}: " + ", ".join(violations),
                entity_type="message_log",
                entity_id=str(message.id),
                tenant_id=message.tenant_id,
                entity_data={name: ts.isoformat() for name, ts in present},
            ))
    return findings


CHECKS: tuple[Callable[[ReconciliationData], list[AnomalyFinding]], ...] = (
    check_invoices,
    check_orphaned_credits,
    check_message_debits,
    check_refunds,
    check_balances,
    check_timing,
)


def run_checks(data: ReconciliationData, duplicate_window_seconds: int = 60) -> list[AnomalyFinding]:
    findings: list[AnomalyFinding] = []
    for check in CHECKS:
        findings.extend(check(data))
    findings.extend(check_duplicates(data, duplicate_window_seconds))
    return findings
