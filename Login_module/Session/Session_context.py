"""
Request-scoped session state handed from the guard to handlers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import enum

from Login_module.Device.Device_session_model import UserSession


class SessionState(str, enum.Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    TIMED_OUT = "timed_out"
    REVOKED = "revoked"
    DESTROYED = "destroyed"


@dataclass
class SessionContext:
    session_id: int
    user_id: int
    role: Optional[str]
    fingerprint: Optional[str]
    hashed_token: str
    last_regenerated_at: Optional[datetime] = None
    csrf_token_hash: Optional[str] = None
    csrf_issued_at: Optional[datetime] = None
    state: SessionState = SessionState.ACTIVE
    raw_token: Optional[str] = None  # set only when a new token must go out in the cookie
    csrf_token: Optional[str] = None  # set only when a CSRF token was issued during this request
    rotated: bool = False
    remaining_seconds: int = 0
    idle_timeout: int = 0

    @classmethod
    def from_session(cls, session: UserSession, **overrides) -> "SessionContext":
        values = dict(
            session_id=session.id,
            user_id=session.user_id,
            role=session.role,
            fingerprint=session.fingerprint,
            hashed_token=session.session_token,
            last_regenerated_at=session.last_regenerated_at,
            csrf_token_hash=session.csrf_token_hash,
            csrf_issued_at=session.csrf_issued_at,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE
