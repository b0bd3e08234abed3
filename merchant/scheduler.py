"""
Scheduled sweeps for the fulfillment core.

Runs inside the FastAPI process on an AsyncIOScheduler. Every job is
re-entrant: overlapping firings (here or in another replica) operate only on
rows matching a strict predicate and claim each row with a conditional update.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from merchant.core.config import get_settings
from merchant.database import async_session
from merchant.services.expiration_reaper import ExpirationReaper

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def reap_expired_carts_task():
    """Expire stale carts and release abandoned checkouts"""
    try:
        result = await ExpirationReaper(async_session).run()
        logger.debug(f"Reaper run finished: {result}")
    except Exception as e:
        logger.exception(f"Error in reaper task: {str(e)}")


async def retry_failed_deliveries_task(dispatcher):
    """Re-queue failed webhook deliveries that still have attempts left"""
    try:
        count = await dispatcher.retry_failed()
        if count:
            logger.info(f"Re-queued {count} failed webhook deliveries")
    except Exception as e:
        logger.exception(f"Error in webhook retry task: {str(e)}")


async def requeue_stale_deliveries_task(dispatcher):
    """Pick up pending deliveries whose worker went away"""
    try:
        await dispatcher.requeue_stale_pending()
    except Exception as e:
        logger.exception(f"Error in stale delivery task: {str(e)}")


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler(dispatcher) -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    scheduler.add_job(
        reap_expired_carts_task,
        IntervalTrigger(seconds=settings.REAPER_INTERVAL_SECONDS),
        id="reap_expired_carts",
        name="Reap Expired Carts",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        retry_failed_deliveries_task,
        IntervalTrigger(seconds=settings.WEBHOOK_RETRY_INTERVAL_SECONDS),
        args=[dispatcher],
        id="retry_failed_deliveries",
        name="Retry Failed Webhook Deliveries",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        requeue_stale_deliveries_task,
        IntervalTrigger(seconds=settings.WEBHOOK_RETRY_INTERVAL_SECONDS),
        args=[dispatcher],
        id="requeue_stale_deliveries",
        name="Requeue Stale Webhook Deliveries",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def start_scheduler(dispatcher):
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler(dispatcher)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Get current scheduler status and job information"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = []
    for job in scheduler.get_jobs():
        jobs_info.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs_info,
    }
