"""
Run a manual reconciliation for one period.

Cross-checks invoices, ledger entries, message debits and wallet balances
for the period and prints the resulting report. Exits non-zero when the run
failed or raised critical anomalies.

Usage:
    python -m scripts.run_reconciliation                          # yesterday, daily
    python -m scripts.run_reconciliation --date 2024-03-01 --period monthly
    python -m scripts.run_reconciliation --date 2024-03-04 --force
"""
import argparse
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone

from deliveryledger.database import async_session_factory, dispose_engine
from deliveryledger.services.reconciliation import (
    PERIOD_TYPES,
    engine_from_settings,
    list_anomalies,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def reconcile(period_type: str, report_date: date, force: bool) -> int:
    async with async_session_factory() as db:
        engine = engine_from_settings(db)
        report = await engine.run(period_type, report_date, force=force, executed_by="cli")
        anomalies = await list_anomalies(db, report_id=report.id, limit=1000)

    print("\n" + "=" * 60)
    print(f"  RECONCILIATION REPORT - {period_type.upper()} {report_date.isoformat()}")
    print(f"  Report:   {report.id}")
    print(f"  Status:   {report.status}")
    print("=" * 60)
    print(f"\n  Invoices checked:       {report.total_invoices_checked}")
    print(f"  Ledger entries checked: {report.total_ledger_entries_checked}")
    print(f"  Messages checked:       {report.total_messages_checked}")
    print(f"  Invoice total:          {report.total_invoice_amount:.2f}")
    print(f"  Ledger credits/debits:  {report.total_ledger_credits:.2f} / {report.total_ledger_debits:.2f}")
    if report.execution_duration_seconds is not None:
        print(f"  Duration:               {report.execution_duration_seconds:.3f}s")
    if report.error_message:
        print(f"\n  ERROR: {report.error_message}")
    print()

    if anomalies:
        print(f"  ANOMALIES ({len(anomalies)}):")
        print("  " + "-" * 40)
        for anomaly in anomalies:
            print(f"  [{anomaly.severity.upper()}] {anomaly.anomaly_type}: {anomaly.description}")
    else:
        print("  No anomalies found.")
    print("\n" + "=" * 60)

    critical = sum(1 for a in anomalies if a.severity == "critical")
    return 1 if report.status == "failed" or critical else 0


async def main(period_type: str, report_date: date, force: bool) -> int:
    try:
        return await reconcile(period_type, report_date, force)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a reconciliation")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=datetime.now(timezone.utc).date() - timedelta(days=1),
        help="Report date (YYYY-MM-DD), defaults to yesterday",
    )
    parser.add_argument("--period", choices=PERIOD_TYPES, default="daily")
    parser.add_argument("--force", action="store_true", help="Supersede an existing report")
    args = parser.parse_args()
    exit(asyncio.run(main(args.period, args.date, args.force)))
