"""
Session guard - the per-request session state machine.

NO_SESSION -> ACTIVE -> TIMED_OUT | REVOKED | DESTROYED

Every failure raises a SessionSecurityError subclass. The specific cause is written
to a security-event audit entry; clients only ever see the uniform rejection.
"""
from typing import Optional, Mapping
import logging

from config import settings
from Error_module.Error_types import (
    SessionSecurityError,
    AuthenticationRequired,
    SessionRevoked,
    SessionHijackSuspected,
    SessionExpired,
    CsrfInvalid,
)
from Audit_module.Audit_crud import AuditRecorder
from Login_module.Device.Device_session_crud import SessionStore
from Login_module.Utils import security
from Login_module.Utils.datetime_utils import seconds_between
from .Session_context import SessionContext, SessionState

logger = logging.getLogger(__name__)


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers:
        return ""
    return headers.get(name) or headers.get(name.lower()) or ""


def request_fingerprint(headers: Optional[Mapping[str, str]]) -> str:
    # Client IP is left out: mobile and proxied clients change address mid-session
    return security.fingerprint(_header(headers, "User-Agent"), _header(headers, "Accept-Language"))


class SessionGuard:
    def __init__(
        self,
        store: SessionStore,
        audit_log: AuditRecorder,
        regenerate_interval_seconds: Optional[int] = None,
        csrf_lifetime_seconds: Optional[int] = None,
    ):
        self.store = store
        self.audit_log = audit_log
        self.regenerate_interval_seconds = regenerate_interval_seconds or settings.SESSION_REGENERATE_INTERVAL_SECONDS
        self.csrf_lifetime_seconds = csrf_lifetime_seconds or settings.CSRF_TOKEN_LIFETIME_SECONDS

    @property
    def clock(self):
        return self.store.clock

    # ------------------------------------------------------------------ security events

    def _reject(
        self,
        error: SessionSecurityError,
        headers: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
    ) -> SessionSecurityError:
        logger.warning(
            f"Session rejected | Reason: {error.reason} | State: {error.state} | "
            f"User ID: {error.user_id} | Session ID: {error.session_id} | IP: {client_ip}"
        )
        try:
            self.audit_log.record_security_event(
                error.reason,
                user_id=error.user_id,
                details={"state": error.state, "detail": error.detail, "session_id": error.session_id},
                source_ip=client_ip,
                user_agent=_header(headers, "User-Agent") or None,
            )
        except Exception as e:
            logger.warning(f"Failed to record security event | Reason: {error.reason} | Error: {e}")
        return error

    # ------------------------------------------------------------------ request entry

    def start(
        self,
        raw_token: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
    ) -> SessionContext:
        """
        Validate the presented token and produce the request's SessionContext.
        Activity is recorded once; the token is rotated when the regenerate interval elapsed.
        """
        try:
            return self._start(raw_token, headers)
        except SessionSecurityError as e:
            raise self._reject(e, headers, client_ip)

    def _start(self, raw_token: Optional[str], headers: Optional[Mapping[str, str]]) -> SessionContext:
        if not raw_token:
            raise AuthenticationRequired("no session token presented")

        validation = self.store.validate_session(raw_token)
        session = validation.session
        if not validation.valid:
            if validation.reason == "not_found":
                raise AuthenticationRequired("unknown session token")
            if validation.reason == "timeout":
                raise SessionExpired(
                    f"{validation.timeout_type} timeout", user_id=session.user_id, session_id=session.id
                )
            raise SessionRevoked("session inactive", user_id=session.user_id, session_id=session.id)

        fingerprint = request_fingerprint(headers)
        if session.fingerprint and not security.constant_time_equals(session.fingerprint, fingerprint):
            self.store.deactivate_session(session, "hijack_suspected")
            raise SessionHijackSuspected(user_id=session.user_id, session_id=session.id)

        if not self.store.touch(session.id):
            raise SessionRevoked("session deactivated concurrently", user_id=session.user_id, session_id=session.id)

        context = SessionContext.from_session(
            session,
            remaining_seconds=validation.remaining_seconds,
            idle_timeout=validation.idle_timeout,
        )

        now = self.clock()
        if session.last_regenerated_at is None or \
                seconds_between(session.last_regenerated_at, now) >= self.regenerate_interval_seconds:
            result = self.store.rotate_token(session, session.session_token)
            if result.session is None:
                raise SessionRevoked("session deactivated during rotation", user_id=session.user_id, session_id=session.id)
            context.hashed_token = result.hashed_token
            context.last_regenerated_at = result.session.last_regenerated_at
            context.raw_token = result.raw_token
            context.rotated = result.rotated

        return context

    # ------------------------------------------------------------------ login / logout

    def set_user(
        self,
        user_id: int,
        role: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
        previous_raw_token: Optional[str] = None,
    ) -> SessionContext:
        """
        Bind an authenticated identity to a brand-new session.
        Any session presented before login is destroyed so its identifier can never be elevated.
        """
        if previous_raw_token:
            self.store.destroy_session(previous_raw_token, reason="replaced_on_login")

        session, raw_token = self.store.create_session(
            user_id=user_id,
            ip_address=client_ip,
            user_agent=_header(headers, "User-Agent") or None,
            fingerprint=request_fingerprint(headers),
            role=role,
        )
        context = SessionContext.from_session(
            session,
            raw_token=raw_token,
            rotated=True,
            idle_timeout=self.store.get_user_idle_timeout(user_id),
        )
        self.issue_csrf(context)
        logger.info(f"Session established | User ID: {user_id} | Session ID: {session.id}")
        return context

    def clear_user(self, context: SessionContext) -> bool:
        session = self.store.get_session(context.session_id)
        context.state = SessionState.DESTROYED
        if not session:
            return False
        return self.store.deactivate_session(session, "logout")

    def logout(self, raw_token: Optional[str]) -> bool:
        if not raw_token:
            return False
        return self.store.destroy_session(raw_token, reason="logout")

    # ------------------------------------------------------------------ CSRF

    def issue_csrf(self, context: SessionContext) -> str:
        """
        Mint a new CSRF token for the session; the previous one stops validating immediately.
        """
        raw_token = security.generate_token()
        token_hash = security.hash_value(raw_token)
        issued_at = self.clock()
        if not self.store.update_csrf(context.session_id, token_hash, issued_at):
            raise self._reject(
                SessionRevoked("cannot issue CSRF token for inactive session",
                               user_id=context.user_id, session_id=context.session_id)
            )
        context.csrf_token = raw_token
        context.csrf_token_hash = token_hash
        context.csrf_issued_at = issued_at
        return raw_token

    def validate_csrf(
        self,
        context: SessionContext,
        candidate: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
    ) -> None:
        """
        Accept iff the candidate matches the current token and is younger than the lifetime.
        """
        if not candidate or not context.csrf_token_hash or context.csrf_issued_at is None:
            raise self._reject(
                CsrfInvalid("missing CSRF token", user_id=context.user_id, session_id=context.session_id),
                headers, client_ip
            )
        if not security.constant_time_equals(context.csrf_token_hash, security.hash_value(candidate)):
            raise self._reject(
                CsrfInvalid("CSRF token mismatch", user_id=context.user_id, session_id=context.session_id),
                headers, client_ip
            )
        if seconds_between(context.csrf_issued_at, self.clock()) >= self.csrf_lifetime_seconds:
            raise self._reject(
                CsrfInvalid("CSRF token expired", user_id=context.user_id, session_id=context.session_id),
                headers, client_ip
            )
