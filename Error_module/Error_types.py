"""
Exception taxonomy for the session and audit layer.

Every session/CSRF failure derives from SessionSecurityError so the HTTP layer can
answer all of them with one uniform rejection; the specific cause travels in
`reason` and only ever reaches the internal security-event audit entry.
"""
from typing import Optional


# Client-visible message for every authentication/session/CSRF failure
UNIFORM_REJECTION_MESSAGE = "Authentication required."


class SessionSecurityError(Exception):
    """Base class for failures that must surface as the uniform rejection."""

    reason = "session_invalid"
    state = "no_session"

    def __init__(self, detail: Optional[str] = None, user_id: Optional[int] = None, session_id: Optional[int] = None):
        super().__init__(detail or self.reason)
        self.detail = detail or self.reason
        self.user_id = user_id
        self.session_id = session_id


class AuthenticationRequired(SessionSecurityError):
    reason = "authentication_required"
    state = "no_session"


class SessionRevoked(AuthenticationRequired):
    reason = "session_revoked"
    state = "revoked"


class SessionHijackSuspected(SessionSecurityError):
    reason = "fingerprint_mismatch"
    state = "destroyed"


class SessionExpired(SessionSecurityError):
    reason = "session_timeout"
    state = "timed_out"


class CsrfInvalid(SessionSecurityError):
    reason = "csrf_invalid"
    state = "active"


class AuditWriteFailed(Exception):
    """Raised when an audit write that is a precondition for responding fails."""

    def __init__(self, message: str = "Audit write failed", action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class RedactionFailure(Exception):
    """A value could not be redacted; callers drop the field instead of keeping it."""
