"""
Scheduler setup for background tasks.
Uses APScheduler to run periodic retention jobs.
"""
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from config import settings
from .session_cleanup import cleanup_audit_events_job, cleanup_otps_job

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None


def start_scheduler():
    """
    Start the background scheduler for periodic tasks.
    - Audit retention: every AUDIT_CLEANUP_INTERVAL_MINUTES (daily by default)
    - OTP cleanup: hourly
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler is already running")
        return scheduler

    scheduler = BackgroundScheduler()

    scheduler.add_job(
        cleanup_audit_events_job,
        trigger=IntervalTrigger(minutes=settings.AUDIT_CLEANUP_INTERVAL_MINUTES),
        id='audit_retention_cleanup',
        name='Purge audit events past retention',
        replace_existing=True
    )
    scheduler.add_job(
        cleanup_otps_job,
        trigger=IntervalTrigger(minutes=60),
        id='otp_cleanup',
        name='Purge stale one-time codes',
        replace_existing=True
    )

    scheduler.start()
    logger.info(
        f"Background scheduler started. Audit cleanup every {settings.AUDIT_CLEANUP_INTERVAL_MINUTES} minutes, "
        f"OTP cleanup every 60 minutes."
    )

    return scheduler


def shutdown_scheduler():
    """
    Shutdown the background scheduler.
    """
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Background scheduler stopped.")
