from sqlalchemy import Column, Integer, String, DateTime, Boolean
from database import Base
from Login_module.Utils.datetime_utils import now_utc

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    role = Column(String(50), nullable=False, default="clinician")  # clinician / admin / privacy_officer / security_officer
    created_at = Column(DateTime, default=now_utc)
    is_active = Column(Boolean, default=True)
