"""
APScheduler setup for membership billing background jobs.

This module configures and starts the background job scheduler for:
- Auto-renewal charges and retries
- Grace period expiry
- Pending payment expiry
"""
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from ..jobs.renewal_jobs import (
    run_auto_renewals,
    sweep_grace_periods,
    expire_pending_payments,
)

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None


def job_listener(event):
    """
    Listen to job execution events for monitoring and logging.

    Args:
        event: APScheduler event
    """
    if event.exception:
        logger.error(
            f"Job {event.job_id} failed with exception: {event.exception}",
            extra={"job_id": event.job_id}
        )
    else:
        logger.info(
            f"Job {event.job_id} executed successfully",
            extra={"job_id": event.job_id}
        )


def init_scheduler():
    """
    Initialize and configure the APScheduler.

    Returns:
        BackgroundScheduler: Configured scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    logger.info("Initializing membership billing scheduler")

    scheduler = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            'coalesce': True,  # Combine missed runs into one
            'max_instances': 1,  # Only one instance of each job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for missed jobs
        }
    )

    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    # Auto-renewal pass - Hourly at :05
    scheduler.add_job(
        func=run_auto_renewals,
        trigger=CronTrigger(minute=5),
        id="run_auto_renewals",
        name="Charge due renewals and retries",
        replace_existing=True
    )
    logger.info("Scheduled: Auto-renewal pass - Hourly at :05")

    # Grace period sweep - Daily at 00:15 AM UTC
    scheduler.add_job(
        func=sweep_grace_periods,
        trigger=CronTrigger(hour=0, minute=15),
        id="sweep_grace_periods",
        name="Suspend subscriptions after grace period",
        replace_existing=True
    )
    logger.info("Scheduled: Grace period sweep - Daily at 00:15 AM UTC")

    # Pending payment reaper - Every 15 minutes
    scheduler.add_job(
        func=expire_pending_payments,
        trigger=CronTrigger(minute="*/15"),
        id="expire_pending_payments",
        name="Expire stale pending payments",
        replace_existing=True
    )
    logger.info("Scheduled: Pending payment reaper - Every 15 minutes")

    return scheduler


def start_scheduler():
    """
    Start the scheduler.

    This should be called during application startup.
    """
    global scheduler

    if scheduler is None:
        init_scheduler()

    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info(f"Membership billing scheduler started with {len(scheduler.get_jobs())} jobs")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.id}: {job.name} (next run: {job.next_run_time})")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """
    Stop the scheduler.

    This should be called during application shutdown.
    """
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Membership billing scheduler stopped")
    else:
        logger.warning("Scheduler not running")


def list_jobs():
    """
    List all scheduled jobs.

    Returns:
        list: List of job information dictionaries
    """
    if scheduler is None:
        return []

    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
            "trigger": str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]
