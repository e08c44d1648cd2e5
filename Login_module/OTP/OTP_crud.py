from sqlalchemy.orm import Session
from sqlalchemy import func, update
from datetime import datetime, timedelta
from typing import Optional, Callable
from dataclasses import dataclass
import enum
import logging

from .OTP_model import OneTimePasscode
from Login_module.Utils import security
from Login_module.Utils.datetime_utils import now_utc

logger = logging.getLogger(__name__)


class OTPStatus(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


OTP_STATUS_MESSAGES = {
    OTPStatus.VALID: "Valid",
    OTPStatus.INVALID: "Invalid OTP code",
    OTPStatus.EXPIRED: "OTP expired",
    OTPStatus.ALREADY_USED: "OTP already used",
}


@dataclass
class OTPVerification:
    status: OTPStatus
    otp_id: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == OTPStatus.VALID

    @property
    def message(self) -> str:
        return OTP_STATUS_MESSAGES[self.status]


def create_otp(
    db: Session,
    user_id: int,
    length: int = security.DEFAULT_OTP_LENGTH,
    expires_in_seconds: int = 600,
    clock: Callable[[], datetime] = now_utc
) -> tuple[OneTimePasscode, str]:
    """
    Generate and store a new code for the user.
    Returns the stored row and the raw code; the raw code is never persisted or logged.
    """
    code = security.generate_otp(length)
    now = clock()
    otp = OneTimePasscode(
        user_id=user_id,
        code_hash=security.hash_value(code),
        expires_at=now + timedelta(seconds=expires_in_seconds),
        consumed=False,
        created_at=now
    )
    db.add(otp)
    db.commit()
    db.refresh(otp)
    logger.info(f"OTP generated | User ID: {user_id} | OTP ID: {otp.otp_id}")
    return otp, code


def verify_otp(
    db: Session,
    user_id: int,
    code: str,
    clock: Callable[[], datetime] = now_utc
) -> OTPVerification:
    """
    Verify and consume a code.

    Resubmitting a code that was already consumed reports ALREADY_USED, which is
    distinct from INVALID (never issued) and EXPIRED. Consumption is a single
    conditional UPDATE so two concurrent submissions cannot both succeed.
    """
    code_hash = security.hash_value(code or "")
    otp = (
        db.query(OneTimePasscode)
        .filter(OneTimePasscode.user_id == user_id, OneTimePasscode.code_hash == code_hash)
        .order_by(OneTimePasscode.created_at.desc())
        .first()
    )

    if not otp or not security.constant_time_equals(otp.code_hash, code_hash):
        return OTPVerification(OTPStatus.INVALID)

    if otp.consumed:
        return OTPVerification(OTPStatus.ALREADY_USED, otp.otp_id)

    now = clock()
    if otp.expires_at <= now:
        return OTPVerification(OTPStatus.EXPIRED, otp.otp_id)

    result = db.execute(
        update(OneTimePasscode)
        .where(OneTimePasscode.otp_id == otp.otp_id, OneTimePasscode.consumed == False)
        .values(consumed=True, consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount == 0:
        # Another request consumed it between our read and the update
        return OTPVerification(OTPStatus.ALREADY_USED, otp.otp_id)

    return OTPVerification(OTPStatus.VALID, otp.otp_id)


def invalidate_user_otps(db: Session, user_id: int) -> int:
    """
    Mark every outstanding code for the user as consumed (e.g. after a successful login).
    """
    result = db.execute(
        update(OneTimePasscode)
        .where(OneTimePasscode.user_id == user_id, OneTimePasscode.consumed == False)
        .values(consumed=True, consumed_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def count_active_otps(db: Session, user_id: int, clock: Callable[[], datetime] = now_utc) -> int:
    return (
        db.query(func.count(OneTimePasscode.otp_id))
        .filter(
            OneTimePasscode.user_id == user_id,
            OneTimePasscode.consumed == False,
            OneTimePasscode.expires_at > clock()
        )
        .scalar()
    ) or 0


def cleanup_expired_otps(db: Session, hours_old: int = 24, clock: Callable[[], datetime] = now_utc) -> int:
    """
    Delete codes older than `hours_old` and unconsumed codes that already expired.
    """
    now = clock()
    cutoff = now - timedelta(hours=hours_old)
    deleted = (
        db.query(OneTimePasscode)
        .filter(
            (OneTimePasscode.created_at < cutoff)
            | ((OneTimePasscode.expires_at < now) & (OneTimePasscode.consumed == False))
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
