from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text
from database import Base
from Login_module.Utils.datetime_utils import now_utc


class UserSession(Base):
    """
    One row per (user, device) login.
    Only the SHA256 hash of the session token is stored; the raw token lives in the cookie.
    Rows are deactivated, never deleted, so the session history stays auditable.
    """
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_token = Column(String(64), nullable=False, unique=True, index=True)  # hashed token
    previous_token = Column(String(64), nullable=True, index=True)               # hash replaced by the last rotation
    device_info = Column(String(255), nullable=True)                             # "Chrome 120.0 on Windows 10/11"
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    fingerprint = Column(String(64), nullable=True)
    role = Column(String(50), nullable=True)
    csrf_token_hash = Column(String(64), nullable=True)
    csrf_issued_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=now_utc, nullable=False, index=True)
    last_activity = Column(DateTime, default=now_utc, nullable=False, index=True)
    last_regenerated_at = Column(DateTime, default=now_utc, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)                    # absolute lifetime ceiling
    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String(50), nullable=True)                               # logout / timeout / forced_logout / hijack_suspected
    is_active = Column(Boolean, default=True, nullable=False, index=True)


class UserPreference(Base):
    """Per-user session preferences (idle timeout in seconds)."""
    __tablename__ = "user_preferences"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    idle_timeout = Column(Integer, nullable=False, default=1800)
    updated_at = Column(DateTime, default=now_utc, onupdate=now_utc, nullable=True)
