"""
Retention cron jobs.
Session rows are kept for forensics and never deleted here; these jobs purge
audit events past retention (flagged events are kept) and stale one-time codes.
"""
import logging
from sqlalchemy.orm import Session
from database import SessionLocal
from config import settings
from Audit_module.Audit_crud import AuditLog
from Login_module.OTP.OTP_crud import cleanup_expired_otps
from Login_module.Utils.datetime_utils import now_utc

logger = logging.getLogger(__name__)


def cleanup_audit_events_job(session_factory=SessionLocal):
    """
    Delete unflagged audit events older than AUDIT_RETENTION_DAYS.
    """
    db: Session = session_factory()
    try:
        deleted_count = AuditLog(db).cleanup_old_logs(settings.AUDIT_RETENTION_DAYS)
        logger.info(f"Audit retention cleanup completed at {now_utc()}. Deleted {deleted_count} audit events.")
    except Exception as e:
        logger.error(f"Error during audit retention cleanup: {str(e)}")
    finally:
        db.close()


def cleanup_otps_job(session_factory=SessionLocal):
    """
    Delete one-time codes older than OTP_RETENTION_HOURS and expired unused codes.
    """
    db: Session = session_factory()
    try:
        deleted_count = cleanup_expired_otps(db, hours_old=settings.OTP_RETENTION_HOURS)
        logger.info(f"OTP cleanup completed at {now_utc()}. Deleted {deleted_count} codes.")
    except Exception as e:
        logger.error(f"Error during OTP cleanup: {str(e)}")
    finally:
        db.close()
