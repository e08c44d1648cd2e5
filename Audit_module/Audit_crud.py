"""
Audit log service - writes redacted audit events and answers compliance queries.
"""
from sqlalchemy.orm import Session
from sqlalchemy import func, case, cast, String, or_
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable, Iterable
from typing import Protocol
import enum
import hashlib
import hmac
import json
import logging
import uuid

from config import settings
from .Audit_model import AuditEvent
from Error_module.Error_types import AuditWriteFailed
from Redaction_module.Redactor import Redactor, default_redactor
from Login_module.Utils.datetime_utils import now_utc

logger = logging.getLogger(__name__)


class AuditAction:
    VIEW = "VIEW"
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SEARCH = "SEARCH"
    EXPORT = "EXPORT"
    PHI_ACCESS = "PHI_ACCESS"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCESS_DENIED = "ACCESS_DENIED"
    SECURITY_EVENT = "SECURITY_EVENT"


SECURITY_ACTIONS = (AuditAction.SECURITY_EVENT, AuditAction.LOGIN_FAILED, AuditAction.ACCESS_DENIED)

MAX_PAGE_SIZE = 1000


class AuditWritePolicy(str, enum.Enum):
    BEST_EFFORT = "best_effort"
    REQUIRED = "required"


class AuditRecorder(Protocol):
    """Narrow capability other components depend on to write audit entries."""

    def record(
        self,
        actor_user_id: Optional[int],
        subject_type: str,
        subject_id: Optional[Any],
        action: str,
        description: str = "",
        details: Optional[Dict[str, Any]] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        flagged: bool = False,
        required: Optional[bool] = None,
    ) -> Optional[AuditEvent]:
        ...

    def record_security_event(
        self,
        event_type: str,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        ...


def compute_checksum(data: Dict[str, Any], salt: str) -> str:
    """
    SHA256 over the canonical JSON form of the row (None values dropped, keys sorted).
    """
    canonical = {key: value for key, value in data.items() if value is not None}
    payload = json.dumps(canonical, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256((payload + salt).encode("utf-8")).hexdigest()


def _checksum_fields(event: AuditEvent) -> Dict[str, Any]:
    return {
        "audit_id": event.audit_id,
        "user_id": event.user_id,
        "subject_type": event.subject_type,
        "subject_id": event.subject_id,
        "action": event.action,
        "occurred_at": event.occurred_at.isoformat() if event.occurred_at else None,
        "source_ip": event.source_ip,
        "user_agent": event.user_agent,
        "description": event.description,
        "details": event.details,
    }


def _normalize_details(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Round-trip through JSON so the checksum sees exactly what the JSON column stores
    if details is None:
        return None
    return json.loads(json.dumps(details, default=str))


class AuditLog:
    """
    Append-mostly audit ledger.

    Every write redacts `details` and `description` first. The write failure policy is
    explicit: BEST_EFFORT logs and returns None, REQUIRED raises AuditWriteFailed so the
    caller cannot report success for an unaudited PHI access.
    """

    def __init__(
        self,
        db: Session,
        redactor: Optional[Redactor] = None,
        policy: Optional[AuditWritePolicy] = None,
        checksum_salt: Optional[str] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.redactor = redactor or default_redactor
        self.policy = policy or AuditWritePolicy(settings.AUDIT_WRITE_POLICY)
        self.checksum_salt = checksum_salt if checksum_salt is not None else settings.AUDIT_CHECKSUM_SALT
        self.clock = clock

    # ------------------------------------------------------------------ writes

    def record(
        self,
        actor_user_id: Optional[int],
        subject_type: str,
        subject_id: Optional[Any],
        action: str,
        description: str = "",
        details: Optional[Dict[str, Any]] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        flagged: bool = False,
        required: Optional[bool] = None,
    ) -> Optional[AuditEvent]:
        """
        Persist one audit event synchronously.
        `required` overrides the configured policy for this call.
        """
        must_succeed = required if required is not None else self.policy == AuditWritePolicy.REQUIRED
        try:
            event = AuditEvent(
                audit_id=str(uuid.uuid4()),
                user_id=actor_user_id,
                subject_type=subject_type,
                subject_id=str(subject_id) if subject_id is not None else None,
                action=action,
                occurred_at=self.clock(),
                source_ip=source_ip[:45] if source_ip else None,
                user_agent=user_agent[:500] if user_agent else None,
                description=self.redactor.redact_text(description) if description else None,
                details=_normalize_details(self.redactor.redact_details(details)),
                flagged=flagged,
            )
            event.checksum = compute_checksum(_checksum_fields(event), self.checksum_salt)
            self.db.add(event)
            self.db.commit()
            self.db.refresh(event)
            return event
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Failed to write audit event | Action: {action} | "
                f"Subject: {subject_type} | Error: {self.redactor.redact_text(str(e))}"
            )
            if must_succeed:
                raise AuditWriteFailed(action=action) from e
            return None

    def record_security_event(
        self,
        event_type: str,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """
        Internal record of a session/CSRF failure cause. Always best effort: the
        client already gets the uniform rejection whether or not this lands.
        """
        return self.record(
            actor_user_id=user_id,
            subject_type="system",
            subject_id=event_type,
            action=AuditAction.SECURITY_EVENT,
            description=f"Security event: {event_type}",
            details=details,
            source_ip=source_ip,
            user_agent=user_agent,
            required=False,
        )

    def set_flagged(self, audit_id: str, flagged: bool = True) -> bool:
        """Flip the review flag - the only mutation allowed on an existing row."""
        event = self.get_event(audit_id)
        if not event:
            return False
        event.flagged = flagged
        self.db.commit()
        logger.info(f"Audit event flag updated | Audit ID: {audit_id} | Flagged: {flagged}")
        return True

    def cleanup_old_logs(self, retention_days: int) -> int:
        """
        Delete unflagged events older than the retention window.
        Flagged events are kept indefinitely pending review.
        """
        cutoff = self.clock() - timedelta(days=retention_days)
        deleted = (
            self.db.query(AuditEvent)
            .filter(AuditEvent.occurred_at < cutoff, AuditEvent.flagged == False)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"Audit retention cleanup removed {deleted} event(s) older than {retention_days} day(s)")
        return deleted

    # ------------------------------------------------------------------ integrity

    def verify_integrity(self, event: AuditEvent) -> bool:
        if not event.checksum:
            return False
        expected = compute_checksum(_checksum_fields(event), self.checksum_salt)
        return hmac.compare_digest(expected, event.checksum)

    # ------------------------------------------------------------------ reads

    def get_event(self, audit_id: str) -> Optional[AuditEvent]:
        return self.db.query(AuditEvent).filter(AuditEvent.audit_id == audit_id).first()

    def _page(self, query, limit: int, offset: int) -> List[AuditEvent]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        return (
            query.order_by(AuditEvent.occurred_at.desc())
            .offset(max(0, offset))
            .limit(limit)
            .all()
        )

    def get_audit_trail(self, subject_type: str, subject_id: Any, limit: int = 100, offset: int = 0) -> List[AuditEvent]:
        """Full trail for one record, newest first."""
        query = self.db.query(AuditEvent).filter(
            AuditEvent.subject_type == subject_type,
            AuditEvent.subject_id == str(subject_id)
        )
        return self._page(query, limit, offset)

    def get_by_actor(self, user_id: int, limit: int = 100, offset: int = 0) -> List[AuditEvent]:
        query = self.db.query(AuditEvent).filter(AuditEvent.user_id == user_id)
        return self._page(query, limit, offset)

    def get_by_action(
        self,
        action: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        user_id: Optional[int] = None,
        flagged: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditEvent]:
        query = self.db.query(AuditEvent).filter(AuditEvent.action == action)
        if start_date:
            query = query.filter(AuditEvent.occurred_at >= start_date)
        if end_date:
            query = query.filter(AuditEvent.occurred_at <= end_date)
        if user_id is not None:
            query = query.filter(AuditEvent.user_id == user_id)
        if flagged is not None:
            query = query.filter(AuditEvent.flagged == flagged)
        return self._page(query, limit, offset)

    def get_flagged_events(self, limit: int = 100, offset: int = 0) -> List[AuditEvent]:
        query = self.db.query(AuditEvent).filter(AuditEvent.flagged == True)
        return self._page(query, limit, offset)

    def search(
        self,
        text: Optional[str] = None,
        action: Optional[str] = None,
        subject_type: Optional[str] = None,
        user_id: Optional[int] = None,
        source_ip: Optional[str] = None,
        flagged: Optional[bool] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditEvent]:
        """Free-text search over action, description and details, plus filters."""
        query = self.db.query(AuditEvent)
        if text:
            pattern = f"%{text}%"
            query = query.filter(or_(
                AuditEvent.action.ilike(pattern),
                AuditEvent.description.ilike(pattern),
                cast(AuditEvent.details, String).ilike(pattern),
            ))
        if action:
            query = query.filter(AuditEvent.action.ilike(f"%{action}%"))
        if subject_type:
            query = query.filter(AuditEvent.subject_type == subject_type)
        if user_id is not None:
            query = query.filter(AuditEvent.user_id == user_id)
        if source_ip:
            query = query.filter(AuditEvent.source_ip == source_ip)
        if flagged is not None:
            query = query.filter(AuditEvent.flagged == flagged)
        if date_from:
            query = query.filter(AuditEvent.occurred_at >= date_from)
        if date_to:
            query = query.filter(AuditEvent.occurred_at <= date_to)
        return self._page(query, limit, offset)

    def get_phi_access_logs(self, patient_id: Any, days: int = 30, limit: int = 100, offset: int = 0) -> List[AuditEvent]:
        """PHI access events for one patient over the last `days` days."""
        since = self.clock() - timedelta(days=days)
        query = self.db.query(AuditEvent).filter(
            AuditEvent.action == AuditAction.PHI_ACCESS,
            AuditEvent.subject_type == "patient",
            AuditEvent.subject_id == str(patient_id),
            AuditEvent.occurred_at >= since
        )
        return self._page(query, limit, offset)

    def get_security_events(
        self,
        event_types: Optional[Iterable[str]] = None,
        hours: int = 24,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditEvent]:
        """
        Rolling window of security-relevant events.
        `event_types` narrows SECURITY_EVENT rows to specific causes (e.g. "fingerprint_mismatch").
        """
        since = self.clock() - timedelta(hours=hours)
        query = self.db.query(AuditEvent).filter(
            AuditEvent.occurred_at >= since,
            AuditEvent.action.in_(SECURITY_ACTIONS)
        )
        event_types = list(event_types or [])
        if event_types:
            query = query.filter(AuditEvent.subject_id.in_(event_types))
        return self._page(query, limit, offset)

    def get_action_statistics(self, days: int = 30) -> List[Dict[str, Any]]:
        since = self.clock() - timedelta(days=days)
        rows = (
            self.db.query(
                AuditEvent.action,
                func.count(AuditEvent.audit_id),
                func.count(func.distinct(AuditEvent.user_id)),
                func.sum(case((AuditEvent.flagged == True, 1), else_=0)),
            )
            .filter(AuditEvent.occurred_at >= since)
            .group_by(AuditEvent.action)
            .order_by(func.count(AuditEvent.audit_id).desc())
            .all()
        )
        return [
            {
                "action": action,
                "count": count,
                "unique_users": unique_users,
                "flagged_count": int(flagged_count or 0),
            }
            for action, count, unique_users, flagged_count in rows
        ]

    def get_user_activity_summary(self, user_id: int, days: int = 30) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        total, unique_subjects, last_activity, flagged = (
            self.db.query(
                func.count(AuditEvent.audit_id),
                func.count(func.distinct(AuditEvent.subject_type)),
                func.max(AuditEvent.occurred_at),
                func.sum(case((AuditEvent.flagged == True, 1), else_=0)),
            )
            .filter(AuditEvent.user_id == user_id, AuditEvent.occurred_at >= since)
            .one()
        )
        return {
            "total_actions": total or 0,
            "unique_subjects": unique_subjects or 0,
            "last_activity": last_activity,
            "flagged_actions": int(flagged or 0),
        }


def serialize_audit_event(event: AuditEvent) -> Dict[str, Any]:
    return {
        "audit_id": event.audit_id,
        "user_id": event.user_id,
        "subject_type": event.subject_type,
        "subject_id": event.subject_id,
        "action": event.action,
        "occurred_at": event.occurred_at.isoformat() + "Z" if event.occurred_at else None,
        "source_ip": event.source_ip,
        "user_agent": event.user_agent,
        "description": event.description,
        "details": event.details,
        "flagged": bool(event.flagged),
    }
