"""
Reconciliation check tests - each check in isolation over a hand-built
snapshot.
"""
import uuid
from datetime import datetime, timedelta, timezone

from deliveryledger.services.reconciliation_checks import (
    ANOMALY_SEVERITY,
    AnomalyFinding,
    check_balances,
    check_duplicates,
    check_invoices,
    check_message_debits,
    check_orphaned_credits,
    check_refunds,
    check_timing,
    run_checks,
)
from deliveryledger.services.reconciliation_source import (
    InvoiceRecord,
    LedgerRecord,
    MessageRecord,
    ReconciliationData,
)

TENANT = uuid.UUID("11111111-1111-1111-1111-111111111111")
START = datetime(2024, 3, 1, tzinfo=timezone.utc)
AT = START + timedelta(hours=10)


def _data(**kwargs) -> ReconciliationData:
    return ReconciliationData(period_start=START, period_end=START + timedelta(days=1), **kwargs)


def _entry(code: str, direction: str, entry_type: str, amount: float, **kwargs) -> LedgerRecord:
    return LedgerRecord(
        id=kwargs.pop("id", uuid.uuid4()),
        tenant_id=kwargs.pop("tenant_id", TENANT),
        transaction_code=code,
        direction=direction,
        entry_type=entry_type,
        amount=amount,
        created_at=kwargs.pop("created_at", AT),
        **kwargs,
    )


def _invoice(total: float, number: str = "INV-2024-0001") -> InvoiceRecord:
    return InvoiceRecord(
        id=uuid.uuid4(), tenant_id=TENANT, invoice_number=number,
        status="paid", total_amount=total, paid_at=AT,
    )


def _message(cost: float = 0.35, code: str = "MSG-20240301-101500-A1B2", **kwargs) -> MessageRecord:
    return MessageRecord(
        id=kwargs.pop("id", uuid.uuid4()),
        tenant_id=TENANT,
        status=kwargs.pop("status", "delivered"),
        quota_consumed=kwargs.pop("quota_consumed", True),
        message_cost=cost,
        transaction_code=code,
        created_at=kwargs.pop("created_at", AT),
        **kwargs,
    )


def _types(findings: list[AnomalyFinding]) -> list[str]:
    return [f.anomaly_type for f in findings]


class TestSeverity:
    def test_fixed_by_type(self):
        finding = AnomalyFinding(anomaly_type="negative_balance", category="balance", description="x")
        assert finding.severity == "critical"
        assert ANOMALY_SEVERITY["timing_anomaly"] == "low"
        assert ANOMALY_SEVERITY["amount_mismatch"] == "high"

    def test_difference_amount(self):
        finding = AnomalyFinding(
            anomaly_type="amount_mismatch", category="invoice", description="x",
            expected_amount=100.0, actual_amount=90.0,
        )
        assert finding.difference_amount == -10.0


class TestCheckInvoices:
    def test_matched_invoice_is_clean(self):
        invoice = _invoice(100.0)
        data = _data(
            invoices=[invoice],
            ledger_entries=[_entry("TOPUP-1", "credit", "topup", 100.0, invoice_id=invoice.id)],
        )
        assert check_invoices(data) == []

    def test_missing_credit(self):
        data = _data(invoices=[_invoice(100.0)])
        findings = check_invoices(data)
        assert _types(findings) == ["invoice_ledger_mismatch"]
        assert findings[0].severity == "critical"

    def test_amount_outside_tolerance(self):
        invoice = _invoice(100.0)
        data = _data(
            invoices=[invoice],
            ledger_entries=[_entry("TOPUP-1", "credit", "topup", 99.5, invoice_id=invoice.id)],
        )
        findings = check_invoices(data)
        assert _types(findings) == ["amount_mismatch"]
        assert findings[0].difference_amount == -0.5

    def test_rounding_within_tolerance(self):
        invoice = _invoice(100.0)
        data = _data(
            invoices=[invoice],
            ledger_entries=[_entry("TOPUP-1", "credit", "topup", 100.004, invoice_id=invoice.id)],
        )
        assert check_invoices(data) == []


class TestCheckOrphanedCredits:
    def test_topup_without_invoice(self):
        data = _data(ledger_entries=[_entry("TOPUP-1", "credit", "topup", 50.0)])
        assert _types(check_orphaned_credits(data)) == ["orphaned_ledger_entry"]

    def test_topup_with_known_invoice(self):
        invoice_id = uuid.uuid4()
        data = _data(
            ledger_entries=[_entry("TOPUP-1", "credit", "topup", 50.0, invoice_id=invoice_id)],
            known_invoice_ids={invoice_id},
        )
        assert check_orphaned_credits(data) == []


class TestCheckMessageDebits:
    def test_paired_message_is_clean(self):
        message = _message(0.35)
        data = _data(
            messages=[message],
            ledger_entries=[_entry(message.transaction_code, "debit", "message", 0.35)],
        )
        assert check_message_debits(data) == []

    def test_charged_message_without_debit(self):
        data = _data(messages=[_message(0.35)])
        assert _types(check_message_debits(data)) == ["message_debit_mismatch"]

    def test_uncharged_message_is_ignored(self):
        data = _data(messages=[_message(0.35, quota_consumed=False)])
        assert check_message_debits(data) == []

    def test_debit_amount_differs(self):
        message = _message(0.35)
        data = _data(
            messages=[message],
            ledger_entries=[_entry(message.transaction_code, "debit", "message", 0.70)],
        )
        assert _types(check_message_debits(data)) == ["amount_mismatch"]

    def test_malformed_debit_code(self):
        data = _data(ledger_entries=[_entry("msg-broken", "debit", "message", 0.35)])
        assert _types(check_message_debits(data)) == ["message_debit_mismatch"]

    def test_debit_without_message(self):
        data = _data(ledger_entries=[_entry("MSG-20240301-101500-ZZZ9", "debit", "message", 0.35)])
        assert _types(check_message_debits(data)) == ["orphaned_ledger_entry"]


class TestCheckRefunds:
    def test_refund_of_known_debit(self):
        data = _data(ledger_entries=[
            _entry("MSG-20240301-101500-A1B2", "debit", "message", 0.35),
            _entry("REFUND-MSG-20240301-101500-A1B2-1709290000", "credit", "refund", 0.35),
        ])
        assert check_refunds(data) == []

    def test_refund_of_debit_outside_period(self):
        data = _data(
            ledger_entries=[_entry("REFUND-X-1", "credit", "refund", 0.35, reference_id="MSG-OLD")],
            known_debit_codes={"MSG-OLD"},
        )
        assert check_refunds(data) == []

    def test_refund_with_no_original(self):
        data = _data(ledger_entries=[_entry("REFUND-MSG-GONE-1709290000", "credit", "refund", 0.35)])
        findings = check_refunds(data)
        assert _types(findings) == ["refund_missing"]
        assert "MSG-GONE" in findings[0].description


class TestCheckBalances:
    def test_negative_balance_is_critical(self):
        data = _data(tenant_balances={TENANT: -12.5})
        findings = check_balances(data)
        assert _types(findings) == ["negative_balance"]
        assert findings[0].severity == "critical"
        assert findings[0].actual_amount == -12.5

    def test_balance_arithmetic(self):
        data = _data(ledger_entries=[
            _entry("A", "credit", "topup", 10.0, balance_before=5.0, balance_after=15.0),
            _entry("B", "debit", "message", 1.0, balance_before=15.0, balance_after=13.0),
        ])
        findings = check_balances(data)
        assert _types(findings) == ["amount_mismatch"]
        assert findings[0].expected_amount == 14.0
        assert findings[0].actual_amount == 13.0


class TestCheckDuplicates:
    def test_reused_transaction_code(self):
        data = _data(ledger_entries=[
            _entry("TOPUP-1", "credit", "topup", 10.0),
            _entry("TOPUP-1", "credit", "topup", 10.0),
        ])
        findings = check_duplicates(data)
        assert _types(findings) == ["duplicate_transaction"]
        assert findings[0].actual_amount == 20.0

    def test_same_reference_inside_window(self):
        data = _data(ledger_entries=[
            _entry("A", "debit", "message", 0.35, reference_id="ref-1", created_at=AT),
            _entry("B", "debit", "message", 0.35, reference_id="ref-1", created_at=AT + timedelta(seconds=5)),
        ])
        assert _types(check_duplicates(data, window_seconds=60)) == ["duplicate_transaction"]

    def test_same_reference_different_buckets(self):
        data = _data(ledger_entries=[
            _entry("A", "debit", "message", 0.35, reference_id="ref-1", created_at=AT),
            _entry("B", "debit", "message", 0.35, reference_id="ref-1", created_at=AT + timedelta(minutes=5)),
        ])
        assert check_duplicates(data, window_seconds=60) == []

    def test_group_flagged_once(self):
        data = _data(ledger_entries=[
            _entry("A", "debit", "message", 0.35, reference_id="ref-1"),
            _entry("A", "debit", "message", 0.35, reference_id="ref-1"),
        ])
        assert len(check_duplicates(data)) == 1


class TestCheckTiming:
    def test_causal_order(self):
        data = _data(messages=[_message(sent_at=AT, delivered_at=AT + timedelta(seconds=5))])
        assert check_timing(data) == []

    def test_delivered_before_sent(self):
        data = _data(messages=[_message(sent_at=AT, delivered_at=AT - timedelta(seconds=5))])
        findings = check_timing(data)
        assert _types(findings) == ["timing_anomaly"]
        assert "delivered_at before sent_at" in findings[0].description
        assert findings[0].severity == "low"


class TestRunChecks:
    def test_clean_period(self):
        invoice = _invoice(100.0)
        message = _message(0.35)
        data = _data(
            invoices=[invoice],
            messages=[message],
            ledger_entries=[
                _entry("TOPUP-1", "credit", "topup", 100.0, invoice_id=invoice.id),
                _entry(message.transaction_code, "debit", "message", 0.35),
            ],
            known_invoice_ids={invoice.id},
            tenant_balances={TENANT: 99.65},
        )
        assert run_checks(data) == []

    def test_collects_every_check(self):
        data = _data(
            invoices=[_invoice(100.0)],
            tenant_balances={TENANT: -1.0},
            messages=[_message(0.35, sent_at=AT, read_at=AT - timedelta(seconds=1))],
        )
        assert set(_types(run_checks(data))) == {
            "invoice_ledger_mismatch",
            "negative_balance",
            "message_debit_mismatch",
            "timing_anomaly",
        }
