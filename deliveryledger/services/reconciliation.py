"""
Reconciliation engine - cross-checks ledger, invoices and message debits
for a period and records what doesn't add up.

Runs are idempotent by (period_type, report_date): a second non-forced run
returns the existing report. A forced run supersedes the prior report
(kept for audit) with a new one. A run that errors or is cancelled is
finalized as failed, never left in_progress, and its duration is always
recorded.

Anomalies then move through a one-way review workflow:
pending -> investigating -> resolved | false_positive | accepted_risk.
"""
import asyncio
import calendar
import logging
import uuid
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import select, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.models.reconciliation import ReconciliationAnomaly, ReconciliationReport
from deliveryledger.services.reconciliation_checks import (
    CATEGORY_BALANCE,
    CATEGORY_INVOICE,
    CATEGORY_MESSAGE,
    AnomalyFinding,
    run_checks,
)
from deliveryledger.services.reconciliation_source import ReconciliationData, ReconciliationSource
from deliveryledger.utils.alerting import AlertType, send_alert
from deliveryledger.utils.metrics import Timer

logger = logging.getLogger(__name__)

PERIOD_TYPES = ("daily", "weekly", "monthly")

RESOLUTION_STATUSES = ("pending", "investigating", "resolved", "false_positive", "accepted_risk")
CLOSED_STATUSES = ("resolved", "false_positive", "accepted_risk")


class ReconciliationError(Exception):
    pass


class ReportNotFoundError(ReconciliationError):
    pass


class AnomalyNotFoundError(ReconciliationError):
    pass


class AnomalyTransitionError(ReconciliationError):
    """Illegal move in the resolution workflow (e.g. resolving twice)."""
    pass


def period_bounds(period_type: str, report_date: date) -> tuple[datetime, datetime]:
    """
    [start, end) in UTC for a period containing report_date.
    daily: the day. weekly: Monday to Monday. monthly: calendar month.
    """
    if period_type == "daily":
        start_day = report_date
        end_day = report_date + timedelta(days=1)
    elif period_type == "weekly":
        start_day = report_date - timedelta(days=report_date.weekday())
        end_day = start_day + timedelta(days=7)
    elif period_type == "monthly":
        start_day = report_date.replace(day=1)
        days_in_month = calendar.monthrange(report_date.year, report_date.month)[1]
        end_day = start_day + timedelta(days=days_in_month)
    else:
        raise ValueError(f"Unknown period type '{period_type}' (expected one of {', '.join(PERIOD_TYPES)})")

    return (
        datetime.combine(start_day, time.min, tzinfo=timezone.utc),
        datetime.combine(end_day, time.min, tzinfo=timezone.utc),
    )


async def get_active_report(
    db: AsyncSession, period_type: str, report_date: date,
) -> Optional[ReconciliationReport]:
    result = await db.execute(
        select(ReconciliationReport).where(
            and_(
                ReconciliationReport.period_type == period_type,
                ReconciliationReport.report_date == report_date,
                ReconciliationReport.is_superseded == False,  # noqa: E712
            )
        )
    )
    return result.scalar_one_or_none()


class ReconciliationEngine:
    """Runs the check battery for one period against a ReconciliationSource."""

    def __init__(
        self,
        db: AsyncSession,
        source: ReconciliationSource,
        duplicate_window_seconds: int = 60,
    ):
        self.db = db
        self.source = source
        self.duplicate_window_seconds = duplicate_window_seconds

    async def run(
        self,
        period_type: str,
        report_date: date,
        force: bool = False,
        executed_by: str = "manual",
    ) -> ReconciliationReport:
        period_start, period_end = period_bounds(period_type, report_date)

        existing = await get_active_report(self.db, period_type, report_date)
        if existing is not None and not force:
            logger.info(
                "Reconciliation %s %s already exists (%s), returning it",
                period_type, report_date, existing.status,
                extra={"report_id": str(existing.id)},
            )
            return existing

        report = ReconciliationReport(
            id=uuid.uuid4(),
            period_type=period_type,
            report_date=report_date,
            period_start=period_start,
            period_end=period_end,
            status="in_progress",
            executed_by=executed_by,
            is_superseded=False,
            started_at=datetime.now(timezone.utc),
        )
        if existing is not None:
            existing.is_superseded = True
            existing.superseded_by_id = report.id
            # The old row must leave the active slot before the new one takes it
            await self.db.flush()
            logger.info(
                "Forced reconciliation supersedes report %s", existing.id,
                extra={"report_id": str(report.id)},
            )

        self.db.add(report)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another run claimed the period between our lookup and insert
            await self.db.rollback()
            winner = await get_active_report(self.db, period_type, report_date)
            if winner is None:
                raise
            logger.warning(
                "Concurrent reconciliation for %s %s, returning report %s",
                period_type, report_date, winner.id,
            )
            return winner
        report_id = report.id

        timer = Timer().start()
        try:
            data = await self.source.load_period(period_start, period_end)
            findings = run_checks(data, self.duplicate_window_seconds)
            await self._finalize(report, data, findings, timer)
        except asyncio.CancelledError:
            await self._finalize_failed(report_id, "Reconciliation run cancelled", timer)
            raise
        except Exception as e:
            logger.error(
                "Reconciliation %s %s failed: %s", period_type, report_date, str(e),
                exc_info=True, extra={"report_id": str(report_id)},
            )
            report = await self._finalize_failed(report_id, str(e), timer)
            await send_alert(
                AlertType.RECONCILIATION_FAILED,
                f"Reconciliation {period_type} {report_date} failed: {e}",
                extra={"report_id": str(report_id)},
            )
        return report

    async def _finalize(
        self,
        report: ReconciliationReport,
        data: ReconciliationData,
        findings: list[AnomalyFinding],
        timer: Timer,
    ) -> None:
        self.db.add_all([
            ReconciliationAnomaly(
                report_id=report.id,
                anomaly_type=finding.anomaly_type,
                severity=finding.severity,
                entity_type=finding.entity_type,
                entity_id=finding.entity_id,
                tenant_id=finding.tenant_id,
                description=finding.description,
                expected_amount=finding.expected_amount,
                actual_amount=finding.actual_amount,
                difference_amount=finding.difference_amount,
                entity_data=finding.entity_data,
                resolution_status="pending",
            )
            for finding in findings
        ])

        categories = Counter(f.category for f in findings)
        by_type = Counter(f.anomaly_type for f in findings)
        by_severity = Counter(f.severity for f in findings)

        report.total_invoices_checked = len(data.invoices)
        report.total_messages_checked = len(data.messages)
        report.total_ledger_entries_checked = len(data.ledger_entries)
        report.invoice_anomalies = categories.get(CATEGORY_INVOICE, 0)
        report.message_anomalies = categories.get(CATEGORY_MESSAGE, 0)
        report.balance_anomalies = categories.get(CATEGORY_BALANCE, 0)
        report.total_anomalies = len(findings)
        report.total_invoice_amount = round(sum(i.total_amount for i in data.invoices), 2)
        report.total_ledger_credits = round(
            sum(e.amount for e in data.ledger_entries if e.direction == "credit"), 2
        )
        report.total_ledger_debits = round(
            sum(e.amount for e in data.ledger_entries if e.direction == "debit"), 2
        )
        report.summary = {
            "by_type": dict(by_type),
            "by_severity": dict(by_severity),
            "message_debits_checked": len(data.message_debits),
            "tenants_checked": len(data.tenant_balances),
        }
        report.status = "anomaly_detected" if findings else "completed"
        report.completed_at = datetime.now(timezone.utc)
        report.execution_duration_seconds = timer.stop() / 1000
        await self.db.commit()

        logger.info(
            "Reconciliation %s %s finished: %s (%d anomalies, %.2fs)",
            report.period_type, report.report_date, report.status,
            len(findings), report.execution_duration_seconds,
            extra={"report_id": str(report.id)},
        )

        critical = by_severity.get("critical", 0)
        if critical:
            await send_alert(
                AlertType.RECONCILIATION_ANOMALIES,
                f"Reconciliation {report.period_type} {report.report_date}: {critical} critical anomalies",
                severity="critical",
                extra={"report_id": str(report.id), "total_anomalies": len(findings)},
            )

    async def _finalize_failed(
        self, report_id: uuid.UUID, error_message: str, timer: Timer,
    ) -> ReconciliationReport:
        await self.db.rollback()
        report = await self.db.get(ReconciliationReport, report_id, populate_existing=True)
        report.status = "failed"
        report.error_message = error_message[:2000]
        report.completed_at = datetime.now(timezone.utc)
        report.execution_duration_seconds = timer.stop() / 1000
        await self.db.commit()
        return report


async def get_report(db: AsyncSession, report_id: uuid.UUID) -> ReconciliationReport:
    report = await db.get(ReconciliationReport, report_id)
    if report is None:
        raise ReportNotFoundError(f"Reconciliation report {report_id} not found")
    return report


async def list_reports(
    db: AsyncSession,
    period_type: Optional[str] = None,
    status: Optional[str] = None,
    include_superseded: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[ReconciliationReport]:
    query = select(ReconciliationReport)
    if period_type:
        query = query.where(ReconciliationReport.period_type == period_type)
    if status:
        query = query.where(ReconciliationReport.status == status)
    if not include_superseded:
        query = query.where(ReconciliationReport.is_superseded == False)  # noqa: E712
    query = query.order_by(
        ReconciliationReport.report_date.desc(), ReconciliationReport.started_at.desc()
    ).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_anomalies(
    db: AsyncSession,
    report_id: Optional[uuid.UUID] = None,
    severity: Optional[str] = None,
    resolution_status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[ReconciliationAnomaly]:
    query = select(ReconciliationAnomaly)
    if report_id:
        query = query.where(ReconciliationAnomaly.report_id == report_id)
    if severity:
        query = query.where(ReconciliationAnomaly.severity == severity)
    if resolution_status:
        query = query.where(ReconciliationAnomaly.resolution_status == resolution_status)
    query = query.order_by(ReconciliationAnomaly.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def _lock_anomaly(db: AsyncSession, anomaly_id: uuid.UUID) -> ReconciliationAnomaly:
    result = await db.execute(
        select(ReconciliationAnomaly)
        .where(ReconciliationAnomaly.id == anomaly_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    anomaly = result.scalar_one_or_none()
    if anomaly is None:
        raise AnomalyNotFoundError(f"Anomaly {anomaly_id} not found")
    return anomaly


async def start_review(
    db: AsyncSession, anomaly_id: uuid.UUID, reviewer_id: str,
) -> ReconciliationAnomaly:
    """pending -> investigating."""
    anomaly = await _lock_anomaly(db, anomaly_id)
    if anomaly.resolution_status != "pending":
        raise AnomalyTransitionError(
            f"Anomaly {anomaly_id} is {anomaly.resolution_status}; only pending anomalies can be reviewed"
        )
    anomaly.resolution_status = "investigating"
    anomaly.review_started_by = reviewer_id
    anomaly.review_started_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Anomaly %s under review by %s", anomaly_id, reviewer_id, extra={"anomaly_id": str(anomaly_id)})
    return anomaly


async def resolve_anomaly(
    db: AsyncSession,
    anomaly_id: uuid.UUID,
    status: str,
    notes: Optional[str],
    resolver_id: str,
) -> ReconciliationAnomaly:
    """pending|investigating -> resolved|false_positive|accepted_risk. Closed anomalies stay closed."""
    if status not in CLOSED_STATUSES:
        raise ValueError(f"Invalid resolution status '{status}' (expected one of {', '.join(CLOSED_STATUSES)})")

    anomaly = await _lock_anomaly(db, anomaly_id)
    if anomaly.resolution_status in CLOSED_STATUSES:
        raise AnomalyTransitionError(
            f"Anomaly {anomaly_id} is already {anomaly.resolution_status}"
        )
    anomaly.resolution_status = status
    anomaly.resolution_notes = notes
    anomaly.resolved_by = resolver_id
    anomaly.resolved_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Anomaly %s closed as %s by %s", anomaly_id, status, resolver_id, extra={"anomaly_id": str(anomaly_id)})
    return anomaly


async def get_reconciliation_summary(
    db: AsyncSession,
    period_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> dict:
    """Aggregate view over active reports in a date range and the anomalies they raised."""
    filters = [ReconciliationReport.is_superseded == False]  # noqa: E712
    if period_type:
        filters.append(ReconciliationReport.period_type == period_type)
    if start_date:
        filters.append(ReconciliationReport.report_date >= start_date)
    if end_date:
        filters.append(ReconciliationReport.report_date <= end_date)

    status_rows = await db.execute(
        select(ReconciliationReport.status, func.count())
        .where(and_(*filters))
        .group_by(ReconciliationReport.status)
    )
    reports_by_status = {status: count for status, count in status_rows.all()}

    report_ids = select(ReconciliationReport.id).where(and_(*filters))
    anomaly_rows = await db.execute(
        select(
            ReconciliationAnomaly.severity,
            ReconciliationAnomaly.resolution_status,
            func.count(),
        )
        .where(ReconciliationAnomaly.report_id.in_(report_ids))
        .group_by(ReconciliationAnomaly.severity, ReconciliationAnomaly.resolution_status)
    )

    by_severity: Counter = Counter()
    by_resolution: Counter = Counter()
    open_critical = 0
    for severity, resolution_status, count in anomaly_rows.all():
        by_severity[severity] += count
        by_resolution[resolution_status] += count
        if severity == "critical" and resolution_status not in CLOSED_STATUSES:
            open_critical += count

    return {
        "period_type": period_type,
        "start_date": start_date.isoformat() if start_date else None,
        "end_date": end_date.isoformat() if end_date else None,
        "total_reports": sum(reports_by_status.values()),
        "reports_by_status": reports_by_status,
        "total_anomalies": sum(by_severity.values()),
        "anomalies_by_severity": dict(by_severity),
        "anomalies_by_resolution": dict(by_resolution),
        "open_critical_anomalies": open_critical,
    }


def engine_from_settings(db: AsyncSession) -> ReconciliationEngine:
    """Engine wired to the live database snapshot source, as API, scheduler and CLI use it."""
    from deliveryledger.config import get_settings
    from deliveryledger.database import get_session_factory
    from deliveryledger.services.reconciliation_source import SqlReconciliationSource

    settings = get_settings()
    source = SqlReconciliationSource(
        get_session_factory(),
        isolation_level=settings.reconciliation_isolation_level or None,
    )
    return ReconciliationEngine(
        db, source, duplicate_window_seconds=settings.reconciliation_duplicate_window_seconds,
    )
