"""
Session activity log model for tracking session lifecycle events.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey
from database import Base
from Login_module.Utils.datetime_utils import now_utc


class SessionActivityLog(Base):
    """
    Session activity log - tracks session lifecycle events.
    Event types: login, logout, timeout, forced_logout, rotation
    """
    __tablename__ = "session_activity_log"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("user_sessions.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    event_type = Column(String(20), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True, index=True)
    user_agent = Column(String(255), nullable=True)
    event_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=now_utc, nullable=False, index=True)
