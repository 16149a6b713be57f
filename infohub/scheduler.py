"""
In-process snapshot scheduling with APScheduler.

Used when SNAPSHOT_INTERVAL_MINUTES > 0, as an alternative to an external
cron calling /api/cron/snapshot.
"""

import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

SNAPSHOT_JOB_ID = "snapshot"


async def _run_snapshot(hub):
    result = await hub.run_snapshot()
    if not result.ok:
        logger.error("Scheduled snapshot finished with errors: %s", result.errors)


def start_scheduler(hub, interval_minutes: int) -> Optional[AsyncIOScheduler]:
    """
    Start a scheduler running the snapshot job every `interval_minutes`.

    Must be called from a running event loop. Returns None when the interval
    is not positive.
    """
    if interval_minutes <= 0:
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        _run_snapshot,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[hub],
        id=SNAPSHOT_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Snapshot scheduler started, every %d min", interval_minutes)
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]):
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Snapshot scheduler stopped")
