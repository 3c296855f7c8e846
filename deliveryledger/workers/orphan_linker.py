"""
Orphan event linker - attaches delivery reports that arrived before the
send path stored their provider message id. Runs every 30 minutes.
"""
import asyncio
import logging

from deliveryledger.database import async_session_factory
from deliveryledger.services.delivery_reports import link_orphan_events

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1800


async def run_orphan_linker():
    """Background loop started from the app lifespan."""
    logger.info("Orphan event linker started")

    while True:
        try:
            async with async_session_factory() as db:
                await link_orphan_events(db)
        except Exception as e:
            logger.error("Orphan event linker error: %s", str(e), exc_info=True)

        await asyncio.sleep(POLL_INTERVAL_SECONDS)
