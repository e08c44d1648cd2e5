"""
Audit event model - the compliance record of truth for access to regulated data.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Text, event, inspect
from sqlalchemy.dialects import mysql
from database import Base
from Login_module.Utils.datetime_utils import now_utc
import uuid

# Microsecond precision on MySQL; SQLite and PostgreSQL keep it by default
PreciseDateTime = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


class AuditEvent(Base):
    """
    Append-mostly ledger row. Everything except `flagged` is immutable once written.
    `details` is always redacted before it reaches this table.
    """
    __tablename__ = "audit_events"

    audit_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    user_id = Column(Integer, nullable=True, index=True)             # actor, NULL for anonymous/system
    subject_type = Column(String(50), nullable=False, index=True)    # patient / encounter / user / system ...
    subject_id = Column(String(100), nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)          # VIEW / CREATE / PHI_ACCESS / SECURITY_EVENT ...
    occurred_at = Column(PreciseDateTime, default=now_utc, nullable=False, index=True)
    source_ip = Column(String(45), nullable=True, index=True)
    user_agent = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    checksum = Column(String(64), nullable=True)                     # SHA256 over the canonical row content
    flagged = Column(Boolean, default=False, nullable=False, index=True)


MUTABLE_AUDIT_COLUMNS = {"flagged"}


@event.listens_for(AuditEvent, "before_update")
def _prevent_audit_mutation(mapper, connection, target):
    state = inspect(target)
    for attr in state.attrs:
        if attr.key in MUTABLE_AUDIT_COLUMNS:
            continue
        if attr.history.has_changes():
            raise ValueError(f"Audit events are immutable; attempted to change '{attr.key}'")
