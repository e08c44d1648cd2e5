from sqlalchemy.orm import Session
from sqlalchemy import update, and_, or_, func
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Optional, Callable, List, Dict, Any
import ipaddress
import logging
import re

from config import settings
from .Device_session_model import UserSession, UserPreference
from . import Device_session_audit_crud
from Login_module.Utils import security
from Login_module.Utils.datetime_utils import now_utc, to_utc_isoformat, seconds_between

logger = logging.getLogger(__name__)


@dataclass
class SessionValidation:
    valid: bool
    reason: Optional[str] = None  # not_found / inactive / timeout
    session: Optional[UserSession] = None
    remaining_seconds: int = 0
    idle_timeout: int = 0
    timeout_type: Optional[str] = None  # idle / absolute


@dataclass
class RotationResult:
    rotated: bool
    session: Optional[UserSession]
    hashed_token: Optional[str]
    raw_token: Optional[str] = None  # only handed to the request that won the rotation


def mask_ip_address(ip_address: Optional[str]) -> str:
    """
    Mask the host part of an address for display.
    IPv4 loses its last octet, IPv6 its last group.
    """
    if not ip_address:
        return "Unknown"
    try:
        parsed = ipaddress.ip_address(ip_address)
    except ValueError:
        return ip_address
    if parsed.version == 4:
        return re.sub(r"\.\d+$", ".***", ip_address)
    return re.sub(r":[^:]*$", ":****", ip_address)


def parse_device_info(user_agent: Optional[str]) -> str:
    """
    Human readable device label from a user agent, e.g. "Chrome 120.0 on Windows 10/11".
    """
    if not user_agent:
        return "Unknown Device"

    if match := re.search(r"Firefox/([0-9.]+)", user_agent):
        browser = f"Firefox {match.group(1)}"
    elif match := re.search(r"Edg(?:e)?/([0-9.]+)", user_agent):
        browser = f"Edge {match.group(1)}"
    elif match := re.search(r"Chrome/([0-9.]+)", user_agent):
        browser = f"Chrome {match.group(1)}"
    elif "Safari/" in user_agent:
        browser = "Safari"
    else:
        browser = "Unknown Browser"

    if match := re.search(r"Windows NT ([0-9.]+)", user_agent):
        version = float(match.group(1))
        if version >= 10.0:
            os_name = "Windows 10/11"
        elif version >= 6.3:
            os_name = "Windows 8.1"
        elif version >= 6.2:
            os_name = "Windows 8"
        elif version >= 6.1:
            os_name = "Windows 7"
        else:
            os_name = "Windows"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Mac OS X" in user_agent:
        os_name = "macOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "Unknown OS"

    return f"{browser} on {os_name}"


class SessionStore:
    """
    Durable per-(user, device) sessions keyed by the hashed token.

    Every state transition is a single conditional UPDATE so concurrent requests
    cannot resurrect a deactivated row or rotate the same token twice.
    Session activity rows are written best effort after the primary change commits.
    """

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = now_utc,
        absolute_lifetime_seconds: Optional[int] = None,
        rotation_grace_seconds: Optional[int] = None,
        max_active_sessions: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.absolute_lifetime_seconds = absolute_lifetime_seconds or settings.SESSION_ABSOLUTE_LIFETIME_SECONDS
        self.rotation_grace_seconds = (
            rotation_grace_seconds if rotation_grace_seconds is not None else settings.SESSION_ROTATION_GRACE_SECONDS
        )
        self.max_active_sessions = (
            max_active_sessions if max_active_sessions is not None else settings.MAX_ACTIVE_SESSIONS
        )

    # ------------------------------------------------------------------ activity log

    def _log_activity(
        self,
        event_type: str,
        user_id: Optional[int],
        session_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            Device_session_audit_crud.create_session_activity_log(
                db=self.db,
                event_type=event_type,
                user_id=user_id,
                session_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data=event_data
            )
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Failed to create session activity log | Event: {event_type} | User ID: {user_id} | Error: {e}")

    # ------------------------------------------------------------------ preferences

    @staticmethod
    def normalize_timeout(timeout_seconds: int) -> int:
        return max(
            settings.SESSION_MIN_IDLE_TIMEOUT_SECONDS,
            min(settings.SESSION_MAX_IDLE_TIMEOUT_SECONDS, int(timeout_seconds))
        )

    def get_user_idle_timeout(self, user_id: int) -> int:
        preference = self.db.query(UserPreference).filter(UserPreference.user_id == user_id).first()
        if preference and preference.idle_timeout is not None:
            return self.normalize_timeout(preference.idle_timeout)
        return settings.SESSION_DEFAULT_IDLE_TIMEOUT_SECONDS

    def set_user_idle_timeout(self, user_id: int, timeout_seconds: int) -> int:
        """Store the user's idle timeout, clamped to the allowed range. Returns the stored value."""
        timeout = self.normalize_timeout(timeout_seconds)
        preference = self.db.query(UserPreference).filter(UserPreference.user_id == user_id).first()
        if preference:
            preference.idle_timeout = timeout
            preference.updated_at = self.clock()
        else:
            self.db.add(UserPreference(user_id=user_id, idle_timeout=timeout, updated_at=self.clock()))
        self.db.commit()
        return timeout

    def get_user_preferences(self, user_id: int) -> Dict[str, Any]:
        preference = self.db.query(UserPreference).filter(UserPreference.user_id == user_id).first()
        return {
            "idle_timeout": self.get_user_idle_timeout(user_id),
            "min_idle_timeout": settings.SESSION_MIN_IDLE_TIMEOUT_SECONDS,
            "max_idle_timeout": settings.SESSION_MAX_IDLE_TIMEOUT_SECONDS,
            "updated_at": to_utc_isoformat(preference.updated_at) if preference else None,
        }

    # ------------------------------------------------------------------ lifecycle

    def create_session(
        self,
        user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[str] = None,
        fingerprint: Optional[str] = None,
        role: Optional[str] = None
    ) -> tuple[UserSession, str]:
        """
        Create a session row and return it with the raw token.
        The raw token is the caller's to put in the cookie; only its hash is stored.
        """
        now = self.clock()
        raw_token = security.generate_token()

        session = UserSession(
            user_id=user_id,
            session_token=security.hash_value(raw_token),
            device_info=(device_info or parse_device_info(user_agent))[:255],
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent,
            fingerprint=fingerprint,
            role=role,
            created_at=now,
            last_activity=now,
            last_regenerated_at=now,
            expires_at=now + timedelta(seconds=self.absolute_lifetime_seconds),
            is_active=True
        )

        try:
            self.db.add(session)
            self.db.commit()
            self.db.refresh(session)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating session | User ID: {user_id} | Error: {e}")
            raise

        self._log_activity("login", user_id, session.id, ip_address, user_agent)
        self._enforce_session_limit(user_id, keep_session_id=session.id)
        return session, raw_token

    def _enforce_session_limit(self, user_id: int, keep_session_id: int) -> None:
        if not self.max_active_sessions or self.max_active_sessions <= 0:
            return
        active = (
            self.db.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.is_active == True)
            .order_by(UserSession.last_activity.asc(), UserSession.id.asc())
            .all()
        )
        excess = len(active) - self.max_active_sessions
        for old_session in active:
            if excess <= 0:
                break
            if old_session.id == keep_session_id:
                continue
            if self._deactivate(old_session, "forced_logout", event_data={"logout_type": "session_limit"}):
                excess -= 1

    def find_session(self, raw_token: Optional[str]) -> Optional[UserSession]:
        """
        Look a session up by raw token.
        A token replaced by a rotation still resolves during the grace window so a request
        that lost the rotation race keeps the same logical session.
        """
        if not raw_token:
            return None
        hashed_token = security.hash_value(raw_token)
        session = (
            self.db.query(UserSession)
            .populate_existing()
            .filter(UserSession.session_token == hashed_token)
            .first()
        )
        if session:
            return session

        grace_cutoff = self.clock() - timedelta(seconds=self.rotation_grace_seconds)
        return (
            self.db.query(UserSession)
            .populate_existing()
            .filter(
                UserSession.previous_token == hashed_token,
                UserSession.last_regenerated_at >= grace_cutoff
            )
            .first()
        )

    def validate_session(self, raw_token: Optional[str]) -> SessionValidation:
        """
        Timeout-aware validation. Idle and absolute timeouts are evaluated here, lazily;
        a violation deactivates the row before reporting the timeout.
        """
        session = self.find_session(raw_token)
        if not session:
            return SessionValidation(valid=False, reason="not_found")

        if not session.is_active:
            return SessionValidation(valid=False, reason="inactive", session=session)

        now = self.clock()
        idle_timeout = self.get_user_idle_timeout(session.user_id)

        if session.expires_at <= now:
            self._deactivate(session, "timeout", event_data={"timeout_type": "absolute"})
            return SessionValidation(valid=False, reason="timeout", session=session,
                                     idle_timeout=idle_timeout, timeout_type="absolute")

        idle_seconds = seconds_between(session.last_activity, now)
        if idle_seconds > idle_timeout:
            self._deactivate(session, "timeout", event_data={"timeout_type": "idle", "idle_seconds": idle_seconds})
            return SessionValidation(valid=False, reason="timeout", session=session,
                                     idle_timeout=idle_timeout, timeout_type="idle")

        remaining_hard = max(0, seconds_between(now, session.expires_at))
        remaining_idle = max(0, idle_timeout - idle_seconds)
        return SessionValidation(
            valid=True,
            session=session,
            remaining_seconds=min(remaining_hard, remaining_idle),
            idle_timeout=idle_timeout
        )

    def touch(self, session_id: int) -> bool:
        """
        Record activity on an active session. Last write wins; inactive rows are never touched.
        """
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id, UserSession.is_active == True)
            .values(last_activity=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0

    def update_activity(self, raw_token: str) -> SessionValidation:
        """
        Validate the token and, when valid, refresh last_activity.
        """
        validation = self.validate_session(raw_token)
        if not validation.valid:
            return validation
        if not self.touch(validation.session.id):
            return SessionValidation(valid=False, reason="inactive", session=validation.session)
        self.db.refresh(validation.session)
        validation.remaining_seconds = min(
            max(0, seconds_between(self.clock(), validation.session.expires_at)),
            validation.idle_timeout
        )
        return validation

    def rotate_token(self, session: UserSession, old_hashed_token: Optional[str] = None) -> RotationResult:
        """
        Replace the session token, keyed by the pre-rotation hash.

        Exactly one concurrent caller wins. A caller that finds zero rows affected does not
        rotate again; it reloads the row and adopts the token hash the winner produced.
        """
        old_hashed_token = old_hashed_token or session.session_token
        raw_token = security.generate_token()
        new_hashed_token = security.hash_value(raw_token)
        now = self.clock()

        result = self.db.execute(
            update(UserSession)
            .where(UserSession.session_token == old_hashed_token, UserSession.is_active == True)
            .values(session_token=new_hashed_token, previous_token=old_hashed_token, last_regenerated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 1:
            self.db.refresh(session)
            self._log_activity("rotation", session.user_id, session.id)
            return RotationResult(rotated=True, session=session, hashed_token=new_hashed_token, raw_token=raw_token)

        winner = (
            self.db.query(UserSession)
            .populate_existing()
            .filter(UserSession.previous_token == old_hashed_token, UserSession.is_active == True)
            .first()
        )
        if winner is None:
            logger.info(f"Token rotation skipped, session no longer active | Session ID: {session.id}")
            return RotationResult(rotated=False, session=None, hashed_token=None)

        logger.info(f"Token rotation lost race, adopting current token | Session ID: {winner.id}")
        return RotationResult(rotated=False, session=winner, hashed_token=winner.session_token)

    def update_csrf(self, session_id: int, csrf_token_hash: str, issued_at: datetime) -> bool:
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id, UserSession.is_active == True)
            .values(csrf_token_hash=csrf_token_hash, csrf_issued_at=issued_at)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0

    def _deactivate(
        self,
        session: UserSession,
        reason: str,
        event_data: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> bool:
        """
        Flip is_active to false exactly once. Returns True for the caller that did it.
        """
        result = self.db.execute(
            update(UserSession)
            .where(UserSession.id == session.id, UserSession.is_active == True)
            .values(is_active=False, ended_at=self.clock(), end_reason=reason)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(session)

        if result.rowcount > 0:
            event_type = reason if reason in ("timeout", "forced_logout") else "logout"
            self._log_activity(
                event_type,
                session.user_id,
                session.id,
                ip_address or session.ip_address,
                user_agent or session.user_agent,
                event_data
            )
            return True
        return False

    def destroy_session(self, raw_token: str, reason: str = "logout") -> bool:
        session = self.find_session(raw_token)
        if not session:
            return False
        return self._deactivate(session, reason)

    def deactivate_session(self, session: UserSession, reason: str, event_data: Optional[Dict[str, Any]] = None) -> bool:
        return self._deactivate(session, reason, event_data=event_data)

    def destroy_session_by_id(self, session_id: int, user_id: int) -> bool:
        """
        Ownership-checked revocation of one device session.
        """
        session = (
            self.db.query(UserSession)
            .filter(UserSession.id == session_id, UserSession.user_id == user_id)
            .first()
        )
        if not session:
            return False
        return self._deactivate(session, "forced_logout", event_data={"logout_type": "specific_session"})

    def destroy_all_user_sessions(self, user_id: int, except_token: Optional[str] = None) -> int:
        """
        Log the user out everywhere, optionally keeping the session behind `except_token`.
        Returns the number of sessions deactivated.
        """
        conditions = [UserSession.user_id == user_id, UserSession.is_active == True]
        if except_token:
            hashed_except = security.hash_value(except_token)
            conditions.append(UserSession.session_token != hashed_except)
            conditions.append(or_(UserSession.previous_token.is_(None), UserSession.previous_token != hashed_except))

        result = self.db.execute(
            update(UserSession)
            .where(and_(*conditions))
            .values(is_active=False, ended_at=self.clock(), end_reason="forced_logout")
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        count = result.rowcount

        self._log_activity(
            "forced_logout",
            user_id,
            event_data={
                "logout_type": "all_except_current" if except_token else "all",
                "sessions_affected": count
            }
        )
        return count

    # ------------------------------------------------------------------ reads

    def get_session(self, session_id: int) -> Optional[UserSession]:
        return self.db.query(UserSession).filter(UserSession.id == session_id).first()

    def _active_query(self, user_id: int):
        return self.db.query(UserSession).filter(
            UserSession.user_id == user_id,
            UserSession.is_active == True,
            UserSession.expires_at > self.clock()
        )

    def list_active_sessions(self, user_id: int, current_session_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Active sessions for display - IP addresses are masked.
        """
        sessions = self._active_query(user_id).order_by(UserSession.last_activity.desc()).all()
        return [
            {
                "id": session.id,
                "device_info": session.device_info or "Unknown Device",
                "ip_address": mask_ip_address(session.ip_address),
                "created_at": to_utc_isoformat(session.created_at),
                "last_activity": to_utc_isoformat(session.last_activity),
                "expires_at": to_utc_isoformat(session.expires_at),
                "is_current": current_session_id is not None and session.id == current_session_id,
            }
            for session in sessions
        ]

    def get_session_stats(self, user_id: int) -> Dict[str, Any]:
        total, last_activity, oldest = (
            self.db.query(
                func.count(UserSession.id),
                func.max(UserSession.last_activity),
                func.min(UserSession.created_at)
            )
            .filter(
                UserSession.user_id == user_id,
                UserSession.is_active == True,
                UserSession.expires_at > self.clock()
            )
            .one()
        )
        return {
            "active_sessions": total or 0,
            "last_activity": to_utc_isoformat(last_activity),
            "oldest_session": to_utc_isoformat(oldest),
        }
