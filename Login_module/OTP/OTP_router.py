from fastapi import APIRouter, Depends, HTTPException, status, Request, Response
from sqlalchemy.orm import Session
import logging

from config import settings
from .OTP_schema import (
    SendOTPRequest,
    SendOTPResponse,
    OTPData,
    VerifyOTPRequest,
    VerifyOTPResponse,
    VerifiedData,
    MeResponse,
    SessionUserData,
    CsrfTokenResponse
)
from deps import get_db, get_audit_log, get_session_guard, get_clock
from Audit_module.Audit_crud import AuditLog, AuditAction
from ..Session.Session_context import SessionContext
from ..Session.Session_guard import SessionGuard
from ..Utils.auth_user import (
    get_current_session,
    get_current_user,
    get_session_token,
    set_session_cookie,
    clear_session_cookie
)
from ..Utils.rate_limiter import (
    get_client_ip,
    get_verify_otp_limiter,
    get_failed_attempt_tracker,
    IPRateLimiter,
    FailedAttemptTracker
)
from ..User.user_session_crud import get_user_by_username
from ..Utils import security
from . import OTP_crud

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/send-otp", response_model=SendOTPResponse)
def send_otp(
    request: SendOTPRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    audit_log: AuditLog = Depends(get_audit_log),
    clock=Depends(get_clock)
):
    """
    Issue a one-time login code for the user.
    The response is identical for unknown accounts so usernames cannot be enumerated.
    """
    client_ip = get_client_ip(http_request)
    user_agent = http_request.headers.get("user-agent")
    user = get_user_by_username(db, request.username)

    raw_code = None
    if user and user.is_active:
        active_codes = OTP_crud.count_active_otps(db, user.id, clock=clock)
        if active_codes >= settings.OTP_MAX_ACTIVE_CODES:
            logger.warning(f"Too many outstanding OTP codes | User ID: {user.id} | Active: {active_codes} | IP: {client_ip}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many OTP requests. Please try again later."
            )
        _, raw_code = OTP_crud.create_otp(
            db,
            user.id,
            length=settings.OTP_LENGTH,
            expires_in_seconds=settings.OTP_EXPIRY_SECONDS,
            clock=clock
        )
    else:
        logger.warning(
            f"OTP requested for unknown or inactive account | Username: {security.mask_value(request.username)} | IP: {client_ip}"
        )
        audit_log.record(
            actor_user_id=None,
            subject_type="auth",
            subject_id=None,
            action=AuditAction.LOGIN_FAILED,
            description="OTP requested for unknown or inactive account",
            details={"stage": "send_otp"},
            source_ip=client_ip,
            user_agent=user_agent
        )

    data = OTPData(
        username=request.username,
        expires_in=settings.OTP_EXPIRY_SECONDS,
        otp=None if settings.is_production else raw_code
    )
    return SendOTPResponse(status="success", message="OTP sent successfully.", data=data)


@router.post("/verify-otp", response_model=VerifyOTPResponse)
def verify_otp(
    req: VerifyOTPRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    audit_log: AuditLog = Depends(get_audit_log),
    guard: SessionGuard = Depends(get_session_guard),
    limiter: IPRateLimiter = Depends(get_verify_otp_limiter),
    tracker: FailedAttemptTracker = Depends(get_failed_attempt_tracker),
    clock=Depends(get_clock)
):
    """
    Verify the one-time code and establish a brand-new session.
    The session token goes out in an HttpOnly cookie; the CSRF token in the body.
    """
    client_ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent")

    allowed, _ = limiter.check(client_ip)
    if not allowed:
        logger.warning(f"OTP verification rate limit exceeded | IP: {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many verification attempts. Please try again later."
        )

    user = get_user_by_username(db, req.username)
    if not user or not user.is_active:
        audit_log.record(
            actor_user_id=None,
            subject_type="auth",
            subject_id=None,
            action=AuditAction.LOGIN_FAILED,
            description="OTP verification for unknown or inactive account",
            details={"stage": "verify_otp"},
            source_ip=client_ip,
            user_agent=user_agent
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OTP code")

    if tracker.is_blocked(user.id):
        logger.warning(f"OTP verification for blocked account | User ID: {user.id} | IP: {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many verification attempts. Please try again later."
        )

    verification = OTP_crud.verify_otp(db, user.id, req.otp, clock=clock)
    if not verification.is_valid:
        tracker.record_failure(user.id)
        logger.warning(f"OTP verification failed | User ID: {user.id} | Status: {verification.status.value} | IP: {client_ip}")
        audit_log.record(
            actor_user_id=user.id,
            subject_type="user",
            subject_id=user.id,
            action=AuditAction.LOGIN_FAILED,
            description=f"OTP verification failed: {verification.message}",
            details={"stage": "verify_otp", "status": verification.status.value},
            source_ip=client_ip,
            user_agent=user_agent
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=verification.message)

    OTP_crud.invalidate_user_otps(db, user.id)
    tracker.reset(user.id)

    context = guard.set_user(
        user_id=user.id,
        role=user.role,
        headers=request.headers,
        client_ip=client_ip,
        previous_raw_token=get_session_token(request)
    )
    set_session_cookie(response, context.raw_token)

    audit_log.record(
        actor_user_id=user.id,
        subject_type="user",
        subject_id=user.id,
        action=AuditAction.LOGIN,
        description="User logged in",
        details={"session_id": context.session_id},
        source_ip=client_ip,
        user_agent=user_agent
    )
    logger.info(f"Login successful | User ID: {user.id} | Session ID: {context.session_id} | IP: {client_ip}")

    data = VerifiedData(
        user_id=user.id,
        username=user.username,
        name=user.name,
        role=user.role,
        csrf_token=context.csrf_token,
        expires_in=settings.SESSION_ABSOLUTE_LIFETIME_SECONDS,
        idle_timeout=context.idle_timeout
    )
    return VerifyOTPResponse(status="success", message="OTP verified successfully.", data=data)


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    context: SessionContext = Depends(get_current_session),
    guard: SessionGuard = Depends(get_session_guard),
    audit_log: AuditLog = Depends(get_audit_log)
):
    """
    Destroy the current session and clear the session cookie.
    """
    guard.clear_user(context)
    clear_session_cookie(response)
    audit_log.record(
        actor_user_id=context.user_id,
        subject_type="user",
        subject_id=context.user_id,
        action=AuditAction.LOGOUT,
        description="User logged out",
        details={"session_id": context.session_id},
        source_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent")
    )
    logger.info(f"Logout | User ID: {context.user_id} | Session ID: {context.session_id}")
    return {"status": "success", "message": "Logged out successfully."}


@router.get("/me", response_model=MeResponse)
def me(
    context: SessionContext = Depends(get_current_session),
    user=Depends(get_current_user)
):
    """
    Identity and remaining lifetime of the current session.
    """
    return MeResponse(
        status="success",
        data=SessionUserData(
            user_id=user.id,
            username=user.username,
            name=user.name,
            email=user.email,
            role=context.role,
            session_id=context.session_id,
            remaining_seconds=context.remaining_seconds,
            idle_timeout=context.idle_timeout
        )
    )


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(
    context: SessionContext = Depends(get_current_session),
    guard: SessionGuard = Depends(get_session_guard)
):
    """
    Issue a fresh CSRF token. The previously issued token stops working immediately.
    """
    token = guard.issue_csrf(context)
    return CsrfTokenResponse(status="success", csrf_token=token, expires_in=settings.CSRF_TOKEN_LIFETIME_SECONDS)
