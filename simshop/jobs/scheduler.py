"""
APScheduler configuration.

- The retry sweep runs every RETRY_SWEEP_INTERVAL_MINUTES
- Profile sync runs every PROFILE_SYNC_INTERVAL_MINUTES
- max_instances=1 and coalesce=True: a sweep never overlaps itself, and
  missed runs collapse into one
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from simshop.config import settings

logger = logging.getLogger(__name__)

jobstores = {
    'default': MemoryJobStore()
}

executors = {
    'default': AsyncIOExecutor(),
}

job_defaults = {
    'coalesce': True,
    'max_instances': 1,
    'misfire_grace_time': 60,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='UTC'
)


async def run_job(job_name: str):
    """Scheduler entry point. Errors are logged so the scheduler keeps running."""
    from simshop.jobs import order_jobs

    job = getattr(order_jobs, job_name)
    try:
        result = await job()
        logger.info(f"Job '{job_name}' completed: {result}")
    except Exception as e:
        logger.exception(f"Job '{job_name}' failed: {e}")


def start_scheduler():
    """Register the periodic jobs and start the scheduler."""
    if scheduler.running:
        return

    scheduler.add_job(
        run_job,
        'interval',
        minutes=settings.RETRY_SWEEP_INTERVAL_MINUTES,
        args=['retry_pending_orders'],
        id='retry_pending_orders',
        name='Retry Pending eSIM Orders',
        replace_existing=True,
    )

    scheduler.add_job(
        run_job,
        'interval',
        minutes=settings.PROFILE_SYNC_INTERVAL_MINUTES,
        args=['sync_esim_profiles'],
        id='sync_esim_profiles',
        name='Sync eSIM Profiles',
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
