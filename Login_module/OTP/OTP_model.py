from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from database import Base
from Login_module.Utils.datetime_utils import now_utc
import uuid


class OneTimePasscode(Base):
    """
    Login one-time passcodes. Only the SHA256 hash of the code is stored.
    A code moves to consumed at most once.
    """
    __tablename__ = "login_otps"

    otp_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(64), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    consumed = Column(Boolean, default=False, nullable=False, index=True)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=now_utc, nullable=False, index=True)
