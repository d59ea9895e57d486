"""APScheduler configuration for recurring jobs."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from retest_backend.core.config import settings
from retest_backend.core.database import SessionLocal
from retest_backend.services.retest import RetestAssignmentService

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def get_db_session() -> Session:
    """Get a database session for scheduler jobs."""
    return SessionLocal()


def expire_retest_targets_job() -> int:
    """
    Job to expire open retest targets whose window has closed.
    Runs every RETEST_EXPIRY_SWEEP_MINUTES.
    """
    logger.info("Starting retest expiry sweep")

    db = get_db_session()
    try:
        count = RetestAssignmentService(db).expire_overdue_targets()
        logger.info(f"Expiry sweep finished, {count} target(s) expired")
        return count
    except Exception as e:
        logger.exception(f"Error expiring retest targets: {e}")
        db.rollback()
        return 0
    finally:
        db.close()


def init_scheduler() -> AsyncIOScheduler:
    """Initialize and configure the scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler(
        timezone=settings.SCHEDULER_TIMEZONE,
        job_defaults={
            "coalesce": True,  # Combine missed runs
            "max_instances": 1,  # Only one instance of each job at a time
            "misfire_grace_time": 300,
        }
    )

    scheduler.add_job(
        expire_retest_targets_job,
        trigger=IntervalTrigger(minutes=settings.RETEST_EXPIRY_SWEEP_MINUTES),
        id="expire_retest_targets",
        name="Expire overdue retest targets",
        replace_existing=True,
    )

    logger.info(
        f"Scheduler initialized with retest expiry sweep every "
        f"{settings.RETEST_EXPIRY_SWEEP_MINUTES} minute(s) ({settings.SCHEDULER_TIMEZONE})"
    )
    return scheduler


def start_scheduler():
    """Start the scheduler."""
    global scheduler
    if scheduler is None:
        scheduler = init_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


def trigger_expiry_sweep() -> int:
    """
    Manually run the expiry sweep.
    Useful for testing or manual intervention.
    """
    return expire_retest_targets_job()
