from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session
from typing import Optional

from config import settings
from deps import get_db, get_session_guard
from Login_module.Session.Session_context import SessionContext
from Login_module.Session.Session_guard import SessionGuard
from Login_module.User.user_session_crud import get_user_by_id
from Login_module.Utils.rate_limiter import get_client_ip
from Error_module.Error_types import SessionRevoked


def set_session_cookie(response: Response, raw_token: str) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=raw_token,
        max_age=settings.SESSION_ABSOLUTE_LIFETIME_SECONDS,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite=settings.SESSION_COOKIE_SAMESITE,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite=settings.SESSION_COOKIE_SAMESITE,
        path="/",
    )


def get_session_token(request: Request) -> Optional[str]:
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


def get_current_session(
    request: Request,
    response: Response,
    guard: SessionGuard = Depends(get_session_guard)
) -> SessionContext:
    """
    Runs the session guard for the request and returns its SessionContext.
    A rotated token is sent back in the session cookie. Any session failure raises a
    SessionSecurityError, which the error handler turns into the uniform 401.
    """
    context = guard.start(get_session_token(request), request.headers, get_client_ip(request))
    request.state.session_context = context
    if context.raw_token:
        set_session_cookie(response, context.raw_token)
    return context


def get_current_user(
    context: SessionContext = Depends(get_current_session),
    db: Session = Depends(get_db)
):
    """
    The authenticated user behind the current session.
    """
    user = get_user_by_id(db, context.user_id)
    if not user or not user.is_active:
        raise SessionRevoked("user missing or inactive", user_id=context.user_id, session_id=context.session_id)
    return user


def require_roles(*roles: str):
    """
    Dependency factory restricting a route to sessions holding one of `roles`.
    """
    def _check(context: SessionContext = Depends(get_current_session)) -> SessionContext:
        if context.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return context

    return _check
