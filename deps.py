"""
Dependencies for FastAPI routes.

Services are built per request around one database session. The session factory
and clock live on `app.state` so tests can point the whole app at another database.
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from database import SessionLocal
from Audit_module.Audit_crud import AuditLog
from Login_module.Device.Device_session_crud import SessionStore
from Login_module.Session.Session_guard import SessionGuard
from Login_module.Utils.datetime_utils import now_utc


def get_session_factory(request: Request):
    return getattr(request.app.state, "session_factory", SessionLocal)


def get_clock(request: Request):
    return getattr(request.app.state, "clock", now_utc)


def get_db(request: Request):
    """
    Database session dependency.
    Yields a database session and ensures it's closed after use.
    """
    db = get_session_factory(request)()
    try:
        yield db
    finally:
        db.close()


def get_audit_log(request: Request, db: Session = Depends(get_db)) -> AuditLog:
    return AuditLog(db, clock=get_clock(request))


def get_session_store(request: Request, db: Session = Depends(get_db)) -> SessionStore:
    return SessionStore(db, clock=get_clock(request))


def get_session_guard(
    store: SessionStore = Depends(get_session_store),
    audit_log: AuditLog = Depends(get_audit_log)
) -> SessionGuard:
    return SessionGuard(store, audit_log)
