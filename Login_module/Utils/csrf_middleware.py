"""
CSRF Middleware - validates CSRF tokens for state-changing operations (POST/PUT/PATCH/DELETE).

Requests carrying a session cookie must echo the session's current CSRF token in the
X-CSRF-Token header. A missing, stale or mismatched token gets the uniform 401 rejection.
Requests without a session cookie pass through; the route's auth dependency rejects them.
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from typing import Callable
import logging

from config import settings
from database import SessionLocal
from Error_module.Error_types import SessionSecurityError
from Error_module.Error_handler import uniform_rejection_response
from Audit_module.Audit_crud import AuditLog
from Login_module.Device.Device_session_crud import SessionStore
from Login_module.Session.Session_context import SessionContext
from Login_module.Session.Session_guard import SessionGuard
from Login_module.Utils.csrf import should_exempt_from_csrf, requires_csrf, extract_csrf_token
from Login_module.Utils.datetime_utils import now_utc
from Login_module.Utils.rate_limiter import get_client_ip

logger = logging.getLogger(__name__)


class CSRFProtectionMiddleware(BaseHTTPMiddleware):
    """
    CSRF protection middleware for state-changing operations.
    Exempts the pre-login endpoints (see should_exempt_from_csrf).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not requires_csrf(request.method):
            return await call_next(request)

        path = request.url.path
        if should_exempt_from_csrf(path):
            return await call_next(request)

        raw_token = request.cookies.get(settings.SESSION_COOKIE_NAME)
        if not raw_token:
            return await call_next(request)

        session_factory = getattr(request.app.state, "session_factory", SessionLocal)
        clock = getattr(request.app.state, "clock", now_utc)
        client_ip = get_client_ip(request)

        db = session_factory()
        try:
            store = SessionStore(db, clock=clock)
            session = store.find_session(raw_token)
            if not session or not session.is_active:
                # Let the auth dependency produce the rejection and its security event
                return await call_next(request)

            guard = SessionGuard(store, AuditLog(db, clock=clock))
            guard.validate_csrf(
                SessionContext.from_session(session),
                extract_csrf_token(request),
                headers=request.headers,
                client_ip=client_ip
            )
        except SessionSecurityError as e:
            logger.warning(
                f"CSRF validation failed | {request.method} {path} | "
                f"Reason: {e.detail} | User ID: {e.user_id} | IP: {client_ip}"
            )
            return uniform_rejection_response()
        finally:
            db.close()

        return await call_next(request)
