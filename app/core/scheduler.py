"""Background job scheduler for calendar syncing and channel renewal."""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from app.calendar.sync import sync_all_resources
from app.calendar.watch import renew_expiring_channels
from app.core import database
from app.core.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def sync_job():
    """Background sync sweep over every connected calendar."""
    try:
        with Session(database.engine) as session:
            summary = sync_all_resources(session)
            logger.info(f"Background sync completed: {summary}")
    except Exception as e:
        logger.error(f"Background sync failed: {e}")


def renewal_job():
    """Re-subscribe push channels before they expire."""
    try:
        with Session(database.engine) as session:
            renew_expiring_channels(session)
    except Exception as e:
        logger.error(f"Channel renewal failed: {e}")


def start_scheduler():
    """Start the background scheduler."""
    scheduler.add_job(
        sync_job,
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="calendar_sync",
        replace_existing=True,
    )
    scheduler.add_job(
        renewal_job,
        trigger=IntervalTrigger(minutes=settings.channel_renewal_interval_minutes),
        id="channel_renewal",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started, syncing every {settings.sync_interval_minutes} minutes, "
        f"renewing channels every {settings.channel_renewal_interval_minutes} minutes"
    )


def shutdown_scheduler():
    """Graceful shutdown."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shut down")
