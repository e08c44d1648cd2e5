"""
Session activity log CRUD operations.
"""
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
from .Device_session_audit_model import SessionActivityLog
from Login_module.Utils.datetime_utils import now_utc


def create_session_activity_log(
    db: Session,
    event_type: str,  # login, logout, timeout, forced_logout, rotation
    user_id: Optional[int] = None,
    session_id: Optional[int] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    event_data: Optional[Dict[str, Any]] = None
) -> SessionActivityLog:
    """
    Create session activity log entry. Tokens are never part of event_data.
    """
    log = SessionActivityLog(
        session_id=session_id,
        user_id=user_id,
        event_type=event_type,
        ip_address=ip_address[:45] if ip_address else None,
        user_agent=user_agent[:255] if user_agent else None,
        event_data=event_data,
        created_at=now_utc()
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log
