"""
Reconciliation scheduler - runs period reconciliations once they are due.

Checks hourly. From the configured hour (UTC) onwards it runs yesterday's
daily reconciliation, last week's on Mondays and last month's on the 1st.
Runs are idempotent by period, so later ticks the same day are no-ops.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from deliveryledger.database import async_session_factory
from deliveryledger.services.reconciliation import engine_from_settings

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 3600


def due_periods(now: datetime, run_hour: int) -> list[tuple[str, date]]:
    """(period_type, report_date) pairs that should exist by `now`."""
    if now.hour < run_hour:
        return []
    yesterday = now.date() - timedelta(days=1)
    periods = [("daily", yesterday)]
    if now.weekday() == 0:
        periods.append(("weekly", now.date() - timedelta(days=7)))
    if now.day == 1:
        periods.append(("monthly", yesterday))
    return periods


async def run_due_reconciliations(now: Optional[datetime] = None) -> list:
    from deliveryledger.config import get_settings
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    reports = []
    for period_type, report_date in due_periods(now, settings.reconciliation_run_hour_utc):
        async with async_session_factory() as db:
            engine = engine_from_settings(db)
            report = await engine.run(period_type, report_date, executed_by="scheduler")
            reports.append(report)
    return reports


async def run_reconciliation_scheduler():
    """Background loop started from the app lifespan."""
    logger.info("Reconciliation scheduler started")

    while True:
        try:
            await run_due_reconciliations()
        except Exception as e:
            logger.error("Reconciliation scheduler error: %s", str(e), exc_info=True)

        await asyncio.sleep(POLL_INTERVAL_SECONDS)
