"""
shared/utils/otp.py
One-time donation codes: issuance and validation.
Codes live inline on the request row; there is no attempt counter.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from config.settings import settings

OTP_LENGTH = 6
_OTP_FLOOR = 10 ** (OTP_LENGTH - 1)          # 100000
_OTP_SPAN = 9 * 10 ** (OTP_LENGTH - 1)       # 900000 values: 100000..999999


class OtpCheck(str, Enum):
    VALID = "valid"
    MISMATCH = "invalid_otp"
    EXPIRED = "otp_expired"


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    expires_at: datetime


def generate_otp() -> str:
    """Uniformly random 6-digit code with no leading zero."""
    return str(_OTP_FLOOR + secrets.randbelow(_OTP_SPAN))


def issue_otp(now: Optional[datetime] = None) -> IssuedOtp:
    now = now or datetime.now(timezone.utc)
    return IssuedOtp(
        code=generate_otp(),
        expires_at=now + timedelta(minutes=settings.OTP_EXPIRY_MINUTES),
    )


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_otp(
    stored_code: Optional[str],
    expires_at: Optional[datetime],
    submitted: str,
    now: Optional[datetime] = None,
) -> OtpCheck:
    """
    Exact string comparison first, expiry second, so a correct but stale code
    is reported as EXPIRED rather than MISMATCH.
    """
    if stored_code is None or expires_at is None:
        return OtpCheck.MISMATCH
    if not secrets.compare_digest(stored_code.encode(), str(submitted).encode()):
        return OtpCheck.MISMATCH
    now = now or datetime.now(timezone.utc)
    if as_utc(expires_at) < now:
        return OtpCheck.EXPIRED
    return OtpCheck.VALID
