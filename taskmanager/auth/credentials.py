from __future__ import annotations

import enum
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from ..models import Account, Role, utcnow
from .errors import DuplicateEmail


class OneTimePurpose(str, enum.Enum):
    VERIFICATION = "verification"
    RESET = "reset"


# (hash column, expiry column) on Account for each purpose.
_PURPOSE_FIELDS = {
    OneTimePurpose.VERIFICATION: ("verification_token", "verification_token_expires"),
    OneTimePurpose.RESET: ("reset_password_token", "reset_password_expires"),
}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_one_time_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class CredentialStore:
    """Account lookups and credential mutations within one database session.

    Callers own the transaction: nothing here commits, so several mutations
    made in one ``session_scope()`` land together.
    """

    def __init__(
        self,
        session,
        *,
        password_hash_method: str = "pbkdf2:sha256:600000",
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.password_hash_method = password_hash_method
        self._ttls = {
            OneTimePurpose.VERIFICATION: verification_ttl,
            OneTimePurpose.RESET: reset_ttl,
        }
        self._clock = clock

    def _select(self, *criteria, for_update: bool = False):
        stmt = select(Account).where(*criteria)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def find_by_email(self, email: str, *, for_update: bool = False) -> Account | None:
        return self._select(Account.email == normalize_email(email), for_update=for_update)

    def get(self, account_id: str, *, for_update: bool = False) -> Account | None:
        return self._select(Account.id == account_id, for_update=for_update)

    def hash_password(self, password: str) -> str:
        return generate_password_hash(password, method=self.password_hash_method)

    def verify_password(self, account: Account, candidate: str) -> bool:
        if not candidate or not account.password_hash:
            return False
        return check_password_hash(account.password_hash, candidate)

    def create_account(self, name: str, email: str, password: str, role: Role = Role.USER) -> Account:
        email = normalize_email(email)
        if self.find_by_email(email) is not None:
            raise DuplicateEmail()

        account = Account(
            name=name.strip(),
            email=email,
            password_hash=self.hash_password(password),
            role=role,
            is_verified=False,
            login_attempts=0,
            otp_attempts=0,
            created_at=self._clock(),
        )
        self.session.add(account)
        try:
            self.session.flush()
        except IntegrityError as exc:
            # A concurrent registration won the unique index.
            raise DuplicateEmail() from exc
        return account

    def set_password(self, account: Account, new_password: str) -> None:
        account.password_hash = self.hash_password(new_password)

    def issue_one_time_token(self, account: Account, purpose: OneTimePurpose | str) -> str:
        purpose = OneTimePurpose(purpose)
        hash_field, expires_field = _PURPOSE_FIELDS[purpose]
        raw_token = secrets.token_hex(32)
        setattr(account, hash_field, hash_one_time_token(raw_token))
        setattr(account, expires_field, self._clock() + self._ttls[purpose])
        return raw_token

    def consume_one_time_token(self, raw_token: str, purpose: OneTimePurpose | str) -> Account | None:
        """Return the account holding a live ``raw_token``, else None.

        Unknown and expired tokens are indistinguishable to the caller.
        """
        if not raw_token:
            return None
        purpose = OneTimePurpose(purpose)
        hash_field, expires_field = _PURPOSE_FIELDS[purpose]
        return self._select(
            getattr(Account, hash_field) == hash_one_time_token(raw_token),
            getattr(Account, expires_field) > self._clock(),
            for_update=True,
        )

    def clear_one_time_token(self, account: Account, purpose: OneTimePurpose | str) -> None:
        hash_field, expires_field = _PURPOSE_FIELDS[OneTimePurpose(purpose)]
        setattr(account, hash_field, None)
        setattr(account, expires_field, None)
