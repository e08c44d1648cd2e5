import os
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use absolute path to make sure .env is found
        env_file=os.path.join(os.path.dirname(__file__), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str = ""
    ENVIRONMENT: str = "production"
    DEBUG: bool = False

    # Session cookie
    SESSION_COOKIE_NAME: str = "RECORDS_SESSID"
    SESSION_COOKIE_SECURE: bool = True
    SESSION_COOKIE_SAMESITE: str = "strict"

    # Session timeouts (seconds)
    SESSION_DEFAULT_IDLE_TIMEOUT_SECONDS: int = 1800  # 30 minutes
    SESSION_MIN_IDLE_TIMEOUT_SECONDS: int = 300  # 5 minutes
    SESSION_MAX_IDLE_TIMEOUT_SECONDS: int = 3600  # 1 hour
    SESSION_ABSOLUTE_LIFETIME_SECONDS: int = 3600  # hard ceiling regardless of activity
    SESSION_REGENERATE_INTERVAL_SECONDS: int = 300  # 5 minutes
    SESSION_ROTATION_GRACE_SECONDS: int = 30
    MAX_ACTIVE_SESSIONS: int = 5

    # CSRF
    CSRF_TOKEN_LIFETIME_SECONDS: int = 3600
    CSRF_HEADER_NAME: str = "X-CSRF-Token"

    # OTP config
    OTP_LENGTH: int = 6
    OTP_EXPIRY_SECONDS: int = 600  # 10 minutes
    OTP_RETENTION_HOURS: int = 24
    OTP_MAX_ACTIVE_CODES: int = 5
    OTP_MAX_FAILED_ATTEMPTS: int = 5  # Block after 5 failed attempts
    OTP_FAILED_ATTEMPT_WINDOW_SECONDS: int = 3600
    OTP_BLOCK_DURATION_SECONDS: int = 600  # 10 minutes block

    # Rate limiting (Redis)
    REDIS_URL: str = "redis://localhost:6379/0"
    VERIFY_OTP_MAX_ATTEMPTS_PER_IP: int = 10
    VERIFY_OTP_WINDOW_SECONDS: int = 3600
    TRUSTED_PROXIES: str = ""  # comma-separated peer addresses allowed to set X-Forwarded-For

    # Audit
    AUDIT_WRITE_POLICY: str = "best_effort"  # best_effort | required
    AUDIT_RETENTION_DAYS: int = 2190  # 6 years
    AUDIT_CHECKSUM_SALT: str = "change-me"
    AUDIT_CLEANUP_INTERVAL_MINUTES: int = 1440
    AUDIT_LOG_READS: bool = True

    # Error handling
    ERROR_LOG_PATH: Optional[str] = None

    ALLOWED_ORIGINS: str = "*"
    RUN_MIGRATIONS_ON_STARTUP: bool = True
    ENABLE_SCHEDULER: bool = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


# Create the settings instance
settings = Settings()
