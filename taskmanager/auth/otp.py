from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..models import Account
from .errors import NoOtpPending, OtpAttemptsExceeded, OtpExpired, OtpInvalid


@dataclass(frozen=True)
class OtpPolicy:
    length: int = 6
    ttl: timedelta = timedelta(minutes=5)
    max_attempts: int = 3

    def generate_code(self) -> str:
        low = 10 ** (self.length - 1)
        return str(low + secrets.randbelow(9 * low))

    def generate(self, account: Account, now: datetime) -> str:
        code = self.generate_code()
        account.otp_code = code
        account.otp_expires_at = now + self.ttl
        account.otp_attempts = 0
        return code

    def verify(self, account: Account, submitted_code: str, now: datetime) -> None:
        """Check ``submitted_code`` against the pending OTP, raising on failure.

        Every evaluated comparison spends one attempt, including the one that
        fails. Once the budget is spent the code is dead until regenerated.
        """
        if not account.otp_code or account.otp_expires_at is None:
            raise NoOtpPending()
        if now > account.otp_expires_at:
            raise OtpExpired()
        if (account.otp_attempts or 0) >= self.max_attempts:
            raise OtpAttemptsExceeded()

        account.otp_attempts = (account.otp_attempts or 0) + 1
        submitted = str(submitted_code or "").encode("utf-8")
        if not hmac.compare_digest(account.otp_code.encode("utf-8"), submitted):
            raise OtpInvalid()

        self.clear(account)

    def clear(self, account: Account) -> None:
        account.otp_code = None
        account.otp_expires_at = None
        account.otp_attempts = 0
