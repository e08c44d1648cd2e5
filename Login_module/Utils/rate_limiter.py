"""
Rate limiting for the OTP login flow.

IPRateLimiter caps verification attempts per client address. FailedAttemptTracker
counts wrong codes per account and blocks the account for a while once the
threshold is reached, so rotating addresses does not help a guesser.
"""
import redis
import logging
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

_redis_client = None


def get_redis_client():
    """Lazily build the shared Redis client from REDIS_URL."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _ip_rate_limit_key(ip: str) -> str:
    """Generate Redis key for IP-based rate limiting"""
    return f"ip_rate_limit:verify_otp:{ip}"


def _otp_failed_key(user_id: int) -> str:
    return f"otp_failed:{user_id}"


def _otp_blocked_key(user_id: int) -> str:
    return f"otp_blocked:{user_id}"


class IPRateLimiter:
    def __init__(self, client=None, max_attempts: Optional[int] = None, window_seconds: Optional[int] = None):
        self._client = client
        self.max_attempts = max_attempts or settings.VERIFY_OTP_MAX_ATTEMPTS_PER_IP
        self.window_seconds = window_seconds or settings.VERIFY_OTP_WINDOW_SECONDS

    @property
    def client(self):
        return self._client if self._client is not None else get_redis_client()

    def check(self, ip: Optional[str]) -> tuple[bool, int]:
        """
        Check if IP address has exceeded rate limit for OTP verification.
        Returns (is_allowed, remaining_attempts)
        """
        if not ip or ip == "unknown":
            return True, self.max_attempts

        try:
            key = _ip_rate_limit_key(ip)
            attempts = self.client.get(key)

            if attempts is None:
                # First attempt, set counter with expiry
                self.client.set(key, 1, ex=self.window_seconds)
                return True, self.max_attempts - 1

            attempts = int(attempts)
            if attempts >= self.max_attempts:
                return False, 0

            self.client.incr(key)
            return True, max(0, self.max_attempts - attempts - 1)
        except Exception as e:
            logger.error(f"Redis error checking IP rate limit: {e}")
            # Fail closed for security - deny if Redis is down
            return False, 0


class FailedAttemptTracker:
    def __init__(
        self,
        client=None,
        max_failures: Optional[int] = None,
        window_seconds: Optional[int] = None,
        block_seconds: Optional[int] = None
    ):
        self._client = client
        self.max_failures = max_failures or settings.OTP_MAX_FAILED_ATTEMPTS
        self.window_seconds = window_seconds or settings.OTP_FAILED_ATTEMPT_WINDOW_SECONDS
        self.block_seconds = block_seconds or settings.OTP_BLOCK_DURATION_SECONDS

    @property
    def client(self):
        return self._client if self._client is not None else get_redis_client()

    def is_blocked(self, user_id: int) -> bool:
        try:
            return self.client.get(_otp_blocked_key(user_id)) is not None
        except Exception as e:
            logger.error(f"Redis error checking account block | User ID: {user_id} | Error: {e}")
            return True

    def record_failure(self, user_id: int) -> int:
        """
        Record a wrong code and return the failure count.
        Reaching the threshold blocks the account and starts a fresh count.
        """
        try:
            failed_key = _otp_failed_key(user_id)
            failed_count = self.client.get(failed_key)
            failed_count = 1 if failed_count is None else int(failed_count) + 1
            self.client.set(failed_key, failed_count, ex=self.window_seconds)

            if failed_count >= self.max_failures:
                self.client.set(_otp_blocked_key(user_id), 1, ex=self.block_seconds)
                self.client.delete(failed_key)
                logger.warning(f"Account blocked after failed OTP attempts | User ID: {user_id} | Failures: {failed_count}")
            return failed_count
        except Exception as e:
            logger.error(f"Redis error recording failed OTP attempt | User ID: {user_id} | Error: {e}")
            return self.max_failures

    def reset(self, user_id: int) -> None:
        """Clear the failure count after a successful verification."""
        try:
            self.client.delete(_otp_failed_key(user_id))
        except Exception as e:
            logger.error(f"Redis error resetting failed OTP attempts | User ID: {user_id} | Error: {e}")


def get_verify_otp_limiter() -> IPRateLimiter:
    return IPRateLimiter()


def get_failed_attempt_tracker() -> FailedAttemptTracker:
    return FailedAttemptTracker()


def trusted_proxies() -> set:
    return {item.strip() for item in settings.TRUSTED_PROXIES.split(",") if item.strip()}


def get_client_ip(request) -> str:
    """
    Extract client IP address from request.
    Forwarding headers count only when the direct peer is a configured trusted proxy.
    """
    peer = request.client.host if request.client else None

    if peer and peer in trusted_proxies():
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Take the first IP in the chain
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    return peer or "unknown"
