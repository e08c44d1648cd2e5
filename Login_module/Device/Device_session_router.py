"""
Device Session Router - endpoints for managing user sessions and session preferences.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from typing import List, Optional
from pydantic import BaseModel, Field

from config import settings
from deps import get_session_store
from Login_module.Session.Session_context import SessionContext
from Login_module.Utils.auth_user import get_current_session, get_session_token
from .Device_session_crud import SessionStore

router = APIRouter(prefix="/sessions", tags=["Sessions"])


class SessionData(BaseModel):
    """Session data model - ip_address is masked"""
    id: int
    device_info: str
    ip_address: str
    created_at: Optional[str] = None
    last_activity: Optional[str] = None
    expires_at: Optional[str] = None
    is_current: bool = False


class ActiveSessionsResponse(BaseModel):
    status: str
    message: str
    active_sessions_count: int
    max_sessions: int
    sessions: List[SessionData]


class SessionStatsResponse(BaseModel):
    status: str
    active_sessions: int
    last_activity: Optional[str] = None
    oldest_session: Optional[str] = None


class RevokeSessionResponse(BaseModel):
    status: str
    message: str
    session_id: int


class RevokeAllResponse(BaseModel):
    status: str
    message: str
    sessions_revoked: int


class PreferencesResponse(BaseModel):
    status: str
    idle_timeout: int
    min_idle_timeout: int
    max_idle_timeout: int
    updated_at: Optional[str] = None


class UpdatePreferencesRequest(BaseModel):
    idle_timeout: int = Field(..., gt=0, description="Idle timeout in seconds; clamped to the allowed range")


@router.get("/active", response_model=ActiveSessionsResponse)
def get_active_sessions(
    context: SessionContext = Depends(get_current_session),
    store: SessionStore = Depends(get_session_store)
):
    """
    Get all active sessions for the current user, newest activity first.
    """
    sessions = store.list_active_sessions(context.user_id, current_session_id=context.session_id)
    return ActiveSessionsResponse(
        status="success",
        message=f"Found {len(sessions)} active session(s).",
        active_sessions_count=len(sessions),
        max_sessions=settings.MAX_ACTIVE_SESSIONS,
        sessions=[SessionData(**session) for session in sessions]
    )


@router.get("/stats", response_model=SessionStatsResponse)
def get_session_stats(
    context: SessionContext = Depends(get_current_session),
    store: SessionStore = Depends(get_session_store)
):
    stats = store.get_session_stats(context.user_id)
    return SessionStatsResponse(status="success", **stats)


@router.post("/revoke/{session_id}", response_model=RevokeSessionResponse)
def revoke_session(
    session_id: int,
    context: SessionContext = Depends(get_current_session),
    store: SessionStore = Depends(get_session_store)
):
    """
    Revoke one of the current user's sessions. Sessions of other users are reported as not found.
    """
    if not store.destroy_session_by_id(session_id, context.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found or already inactive"
        )
    return RevokeSessionResponse(status="success", message="Session revoked successfully.", session_id=session_id)


@router.post("/revoke-all", response_model=RevokeAllResponse)
def revoke_all_sessions(
    request: Request,
    context: SessionContext = Depends(get_current_session),
    store: SessionStore = Depends(get_session_store)
):
    """
    Log out every other device; the calling session stays active.
    """
    current_token = context.raw_token or get_session_token(request)
    count = store.destroy_all_user_sessions(context.user_id, except_token=current_token)
    return RevokeAllResponse(
        status="success",
        message=f"Revoked {count} other session(s).",
        sessions_revoked=count
    )


@router.get("/preferences", response_model=PreferencesResponse)
def get_preferences(
    context: SessionContext = Depends(get_current_session),
    store: SessionStore = Depends(get_session_store)
):
    return PreferencesResponse(status="success", **store.get_user_preferences(context.user_id))


@router.put("/preferences", response_model=PreferencesResponse)
def update_preferences(
    payload: UpdatePreferencesRequest,
    context: SessionContext = Depends(get_current_session),
    store: SessionStore = Depends(get_session_store)
):
    """
    Update the idle timeout. Values outside the allowed range are clamped, not rejected.
    """
    store.set_user_idle_timeout(context.user_id, payload.idle_timeout)
    return PreferencesResponse(status="success", **store.get_user_preferences(context.user_id))
