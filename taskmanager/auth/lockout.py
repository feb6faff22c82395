from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..models import Account
from .errors import AccountLocked


@dataclass(frozen=True)
class LockoutPolicy:
    """Failed-login accounting over ``login_attempts``/``lock_until``.

    Locked means ``lock_until`` lies in the future; unlocking is purely a
    matter of time passing. Attempts made while locked are refused before the
    password is checked and never touch the counter.
    """

    max_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=15)

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.lock_until is not None and account.lock_until > now

    def ensure_unlocked(self, account: Account, now: datetime) -> None:
        if self.is_locked(account, now):
            remaining = int((account.lock_until - now).total_seconds())
            raise AccountLocked(retryAfterSeconds=max(remaining, 1))

    def record_failure(self, account: Account, now: datetime) -> bool:
        """Count a wrong password; returns True when this failure locks the account."""
        account.login_attempts = (account.login_attempts or 0) + 1
        if account.login_attempts >= self.max_attempts:
            account.lock_until = now + self.lock_duration
            return True
        return False

    def record_success(self, account: Account, now: datetime) -> None:
        account.login_attempts = 0
        account.lock_until = None
        account.last_login = now
