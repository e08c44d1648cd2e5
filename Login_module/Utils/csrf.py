"""
CSRF helpers.

Tokens are random values bound to one session row: the hash and issue time are stored
on the session, a reissue overwrites them, and a token older than
CSRF_TOKEN_LIFETIME_SECONDS is rejected. Validation itself lives in SessionGuard.
"""
from typing import Optional
from starlette.requests import Request

from config import settings

STATE_CHANGING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# Endpoints reachable before a session (and therefore a CSRF token) exists
CSRF_EXEMPT_PATHS = (
    "/auth/send-otp",
    "/auth/verify-otp",
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def requires_csrf(method: str) -> bool:
    return method.upper() in STATE_CHANGING_METHODS


def should_exempt_from_csrf(path: str) -> bool:
    """
    Check if a path should be exempted from CSRF validation.
    """
    path = path.rstrip("/") or "/"
    return path in CSRF_EXEMPT_PATHS


def extract_csrf_token(request: Request) -> Optional[str]:
    """
    CSRF token from the request header (header lookup is case-insensitive).
    """
    token = request.headers.get(settings.CSRF_HEADER_NAME)
    return token.strip() if token else None
