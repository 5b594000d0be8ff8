"""APScheduler setup for the daily listing expiry sweep."""

from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from clients.store import DocumentStore, StoreError
from models.operations.credits import credit_expire_due
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def expire_credits_job(store: DocumentStore):
    """Move listings whose certification has lapsed to expired."""
    logger.info("Daily credit expiry job starting...")
    try:
        expired = await credit_expire_due(store)
    except StoreError as e:
        logger.error(f"Credit expiry job failed: {e}", exc_info=True)
        return
    logger.info(f"Credit expiry job completed: {expired} listings expired")


def init_scheduler(store: DocumentStore) -> AsyncIOScheduler:
    """Start the APScheduler with the daily expiry job."""
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        expire_credits_job,
        trigger=CronTrigger(hour=1, minute=0, timezone=ZoneInfo("UTC")),
        args=[store],
        id="daily_credit_expiry",
        name="Daily Credit Expiry",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info("APScheduler started with daily credit expiry (01:00 UTC)")
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
