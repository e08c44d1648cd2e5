"""
Token codec - generation and hashing of session tokens, CSRF tokens and one-time codes.
Raw values are only ever handed back to the caller; anything persisted or logged
goes through hash_value() or mask_value() first.
"""
import hashlib
import hmac
import secrets
from typing import Optional

# Session token length in bytes (64 hex characters)
TOKEN_BYTES = 32
DEFAULT_OTP_LENGTH = 6


def generate_token(num_bytes: int = TOKEN_BYTES) -> str:
    """
    Returns a fixed-length, cryptographically random hex token.
    """
    return secrets.token_hex(num_bytes)


def hash_value(value: str) -> str:
    """
    Returns SHA256 hashed string of a given plain text.
    Used for storing/looking up session tokens, CSRF tokens and OTP codes.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_otp(length: int = DEFAULT_OTP_LENGTH) -> str:
    """
    Uniformly distributed, zero-padded numeric code of exactly `length` digits.
    """
    if length < 1:
        raise ValueError("OTP length must be at least 1")
    return str(secrets.randbelow(10 ** length)).zfill(length)


def constant_time_equals(expected: Optional[str], candidate: Optional[str]) -> bool:
    """
    Compare a stored value with a submitted one without leaking timing information.
    """
    if expected is None or candidate is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


def mask_value(value: Optional[str], visible: int = 3) -> str:
    """
    Masked form of a secret for log lines: "***" plus at most the last `visible` chars.
    Short values are fully masked.
    """
    if not value:
        return "***"
    if len(value) <= visible * 2:
        return "***"
    return "***" + value[-visible:]


def fingerprint(user_agent: Optional[str], accept_language: Optional[str]) -> str:
    """
    Session fingerprint from stable request headers.
    Client IP is left out so roaming mobile clients keep their sessions.
    """
    components = [user_agent or "", accept_language or ""]
    return hash_value("|".join(components))
