"""
Audit log query endpoints for compliance reviewers.
Useful for compliance, forensics, and incident response.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel

from deps import get_audit_log
from Login_module.Session.Session_context import SessionContext
from Login_module.Utils.auth_user import get_current_session, require_roles
from Login_module.Utils.datetime_utils import to_utc_isoformat
from .Audit_crud import AuditLog, MAX_PAGE_SIZE, serialize_audit_event

COMPLIANCE_ROLES = ("admin", "privacy_officer", "security_officer")

router = APIRouter(prefix="/audit", tags=["Audit"])

require_compliance = require_roles(*COMPLIANCE_ROLES)


class FlagRequest(BaseModel):
    flagged: bool = True


def _page_response(events, limit: int, offset: int) -> dict:
    return {
        "status": "success",
        "count": len(events),
        "limit": limit,
        "offset": offset,
        "data": [serialize_audit_event(event) for event in events]
    }


@router.get("/trail/{subject_type}/{subject_id}")
def get_audit_trail(
    subject_type: str,
    subject_id: str,
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    """Full audit trail for one record, newest first."""
    events = audit_log.get_audit_trail(subject_type, subject_id, limit=limit, offset=offset)
    return _page_response(events, limit, offset)


@router.get("/actions/{action}")
def get_by_action(
    action: str,
    start_date: Optional[datetime] = Query(None, description="Start date (ISO format)"),
    end_date: Optional[datetime] = Query(None, description="End date (ISO format)"),
    user_id: Optional[int] = Query(None, description="Filter by actor"),
    flagged: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    events = audit_log.get_by_action(
        action.upper(),
        start_date=start_date,
        end_date=end_date,
        user_id=user_id,
        flagged=flagged,
        limit=limit,
        offset=offset
    )
    return _page_response(events, limit, offset)


@router.get("/actors/{user_id}")
def get_by_actor(
    user_id: int,
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    days: int = Query(30, ge=1, le=3650),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(get_current_session)
):
    """Everything a user did. Non-compliance users may only look at themselves."""
    if context.role not in COMPLIANCE_ROLES and context.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")

    events = audit_log.get_by_actor(user_id, limit=limit, offset=offset)
    summary = audit_log.get_user_activity_summary(user_id, days=days)
    summary["last_activity"] = to_utc_isoformat(summary["last_activity"])
    response = _page_response(events, limit, offset)
    response["summary"] = summary
    return response


@router.get("/search")
def search_audit_events(
    q: Optional[str] = Query(None, description="Free text over action, description and details"),
    action: Optional[str] = Query(None),
    subject_type: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    source_ip: Optional[str] = Query(None),
    flagged: Optional[bool] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    events = audit_log.search(
        text=q,
        action=action,
        subject_type=subject_type,
        user_id=user_id,
        source_ip=source_ip,
        flagged=flagged,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    )
    return _page_response(events, limit, offset)


@router.get("/flagged")
def get_flagged_events(
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    return _page_response(audit_log.get_flagged_events(limit=limit, offset=offset), limit, offset)


@router.get("/phi-access/{patient_id}")
def get_phi_access_logs(
    patient_id: str,
    days: int = Query(30, ge=1, le=3650),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    """Who accessed this patient's records over the last `days` days."""
    events = audit_log.get_phi_access_logs(patient_id, days=days, limit=limit, offset=offset)
    return _page_response(events, limit, offset)


@router.get("/security-events")
def get_security_events(
    event_types: Optional[List[str]] = Query(None, description="e.g. fingerprint_mismatch, csrf_invalid"),
    hours: int = Query(24, ge=1, le=24 * 90),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    events = audit_log.get_security_events(event_types=event_types, hours=hours, limit=limit, offset=offset)
    return _page_response(events, limit, offset)


@router.get("/statistics")
def get_statistics(
    days: int = Query(30, ge=1, le=3650),
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    stats = audit_log.get_action_statistics(days=days)
    return {"status": "success", "days": days, "data": stats}


@router.post("/{audit_id}/flag")
def flag_audit_event(
    audit_id: str,
    payload: FlagRequest,
    audit_log: AuditLog = Depends(get_audit_log),
    context: SessionContext = Depends(require_compliance)
):
    """Mark an event for review (or clear the mark). No other field of an event can change."""
    if not audit_log.set_flagged(audit_id, payload.flagged):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit event not found")
    return {"status": "success", "message": "Audit event updated.", "audit_id": audit_id, "flagged": payload.flagged}
