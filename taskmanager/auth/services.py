from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Callable

from flask import current_app

from ..db import session_scope
from ..logging import get_logger
from ..models import Account, utcnow
from ..notifications import NotificationSender, get_notification_sender
from .credentials import CredentialStore, OneTimePurpose
from .errors import (
    AccountNotFound,
    AlreadyVerified,
    InvalidCredentials,
    InvalidOrExpiredToken,
    OtpInvalid,
    TokenError,
    TokenRevoked,
)
from .lockout import LockoutPolicy
from .otp import OtpPolicy
from .tokens import TokenKind, TokenService

log = get_logger(__name__)


class AuthService:
    """Register/login/refresh/logout and the email, reset and OTP flows.

    Holds no state of its own. Each flow runs its account mutations inside a
    single transaction with the account row locked, and dispatches
    notifications only after that transaction has committed.
    """

    def __init__(
        self,
        *,
        token_service: TokenService,
        notifier: NotificationSender,
        session_factory: Callable[[], AbstractContextManager] = session_scope,
        lockout: LockoutPolicy | None = None,
        otp: OtpPolicy | None = None,
        password_hash_method: str = "pbkdf2:sha256:600000",
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(minutes=10),
        client_url: str = "http://localhost:3000",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tokens = token_service
        self.notifier = notifier
        self._session = session_factory
        self.lockout = lockout or LockoutPolicy()
        self.otp = otp or OtpPolicy()
        self.password_hash_method = password_hash_method
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.client_url = client_url.rstrip("/")
        self._clock = clock

    def _store(self, db) -> CredentialStore:
        return CredentialStore(
            db,
            password_hash_method=self.password_hash_method,
            verification_ttl=self.verification_ttl,
            reset_ttl=self.reset_ttl,
            clock=self._clock,
        )

    def _notify(self, to: str, template: str, data: dict, *, account_id: str) -> None:
        # The token is already stored, so a failed send is recoverable by
        # asking again; it must not fail the flow that issued it.
        try:
            self.notifier.send_notification(to, template, data)
        except Exception:
            log.exception("notification_failed", template=template, account_id=account_id)

    def _send_verification(self, account: Account, raw_token: str) -> None:
        self._notify(
            account.email,
            "emailVerification",
            {
                "name": account.name,
                "verificationUrl": f"{self.client_url}/verify-email?token={raw_token}",
            },
            account_id=account.id,
        )

    def register(self, name: str, email: str, password: str) -> dict:
        with self._session() as db:
            store = self._store(db)
            account = store.create_account(name, email, password)
            raw_token = store.issue_one_time_token(account, OneTimePurpose.VERIFICATION)

        log.info("account_registered", account_id=account.id)
        self._send_verification(account, raw_token)
        return {"user": account.to_public_dict(), **self.tokens.issue_pair(account.id)}

    def login(self, email: str, password: str) -> dict:
        with self._session() as db:
            store = self._store(db)
            account = store.find_by_email(email, for_update=True)
            if account is None:
                raise InvalidCredentials()

            now = self._clock()
            self.lockout.ensure_unlocked(account, now)

            if store.verify_password(account, password):
                self.lockout.record_success(account, now)
                failed, locked = False, False
            else:
                failed = True
                locked = self.lockout.record_failure(account, now)

        if failed:
            log.info(
                "login_failed",
                account_id=account.id,
                attempts=account.login_attempts,
                locked=locked,
            )
            raise InvalidCredentials()

        log.info("login_succeeded", account_id=account.id)
        return {"user": account.to_public_dict(), **self.tokens.issue_pair(account.id)}

    def refresh(self, refresh_token: str) -> dict:
        verified = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        # Rotation: the presented refresh token is spent, and only one of any
        # concurrent requests presenting it may spend it.
        if not self.tokens.claim(refresh_token):
            log.info("refresh_token_reused", account_id=verified.account_id)
            raise TokenRevoked()

        with self._session() as db:
            account = self._store(db).get(verified.account_id)
        if account is None:
            raise AccountNotFound(status_code=401)

        log.info("tokens_refreshed", account_id=account.id)
        return self.tokens.issue_pair(account.id)

    def logout(self, access_token: str, refresh_token: str | None = None) -> None:
        """Revoke the access token and, if it belongs to the same account, the refresh token.

        An access token that is already revoked is still accepted, so a
        retried logout can finish revoking the refresh token.
        """
        verified = self.tokens.verify(access_token, TokenKind.ACCESS, check_revoked=False)
        self.tokens.revoke(access_token)
        if refresh_token:
            self._revoke_refresh_token(verified.account_id, refresh_token)
        log.info("logged_out", account_id=verified.account_id)

    def _revoke_refresh_token(self, account_id: str, refresh_token: str) -> None:
        try:
            owner = self.tokens.verify(refresh_token, TokenKind.REFRESH, check_revoked=False)
        except TokenError as exc:
            log.info("logout_refresh_token_ignored", account_id=account_id, reason=exc.error_code)
            return
        if owner.account_id != account_id:
            log.warning("logout_refresh_token_foreign", account_id=account_id)
            return
        self.tokens.revoke(refresh_token)

    def authenticate(self, access_token: str) -> Account:
        """Resolve a bearer access token to its account."""
        verified = self.tokens.verify(access_token, TokenKind.ACCESS)
        with self._session() as db:
            account = self._store(db).get(verified.account_id)
        if account is None:
            raise AccountNotFound(status_code=401)
        return account

    def verify_email(self, raw_token: str) -> None:
        with self._session() as db:
            store = self._store(db)
            account = store.consume_one_time_token(raw_token, OneTimePurpose.VERIFICATION)
            if account is None:
                raise InvalidOrExpiredToken()
            account.is_verified = True
            store.clear_one_time_token(account, OneTimePurpose.VERIFICATION)
        log.info("email_verified", account_id=account.id)

    def resend_verification(self, email: str) -> None:
        with self._session() as db:
            store = self._store(db)
            account = store.find_by_email(email, for_update=True)
            if account is None:
                raise AccountNotFound()
            if account.is_verified:
                raise AlreadyVerified()
            raw_token = store.issue_one_time_token(account, OneTimePurpose.VERIFICATION)
        self._send_verification(account, raw_token)

    def forgot_password(self, email: str) -> None:
        with self._session() as db:
            store = self._store(db)
            account = store.find_by_email(email, for_update=True)
            if account is None:
                return
            raw_token = store.issue_one_time_token(account, OneTimePurpose.RESET)

        log.info("password_reset_requested", account_id=account.id)
        self._notify(
            account.email,
            "passwordReset",
            {"name": account.name, "resetUrl": f"{self.client_url}/reset-password?token={raw_token}"},
            account_id=account.id,
        )

    def reset_password(self, raw_token: str, new_password: str) -> None:
        with self._session() as db:
            store = self._store(db)
            account = store.consume_one_time_token(raw_token, OneTimePurpose.RESET)
            if account is None:
                raise InvalidOrExpiredToken()
            store.set_password(account, new_password)
            store.clear_one_time_token(account, OneTimePurpose.RESET)
        log.info("password_reset", account_id=account.id)

    def change_password(self, account_id: str, current_password: str, new_password: str) -> None:
        with self._session() as db:
            store = self._store(db)
            account = store.get(account_id, for_update=True)
            if account is None:
                raise AccountNotFound()
            if not store.verify_password(account, current_password):
                raise InvalidCredentials("current password is incorrect", status_code=400)
            store.set_password(account, new_password)
        log.info("password_changed", account_id=account_id)

    def send_otp(self, email: str) -> None:
        with self._session() as db:
            account = self._store(db).find_by_email(email, for_update=True)
            if account is None:
                raise AccountNotFound()
            code = self.otp.generate(account, self._clock())

        self._notify(
            account.email,
            "otpCode",
            {"name": account.name, "otp": code},
            account_id=account.id,
        )

    def verify_otp(self, email: str, code: str) -> None:
        failure = None
        with self._session() as db:
            account = self._store(db).find_by_email(email, for_update=True)
            if account is None:
                raise AccountNotFound()
            try:
                self.otp.verify(account, code, self._clock())
            except OtpInvalid as exc:
                # The spent attempt has to be committed before reporting it.
                failure = exc

        if failure is not None:
            log.info("otp_rejected", account_id=account.id, attempts=account.otp_attempts)
            raise failure
        log.info("otp_verified", account_id=account.id)


def get_auth_service() -> AuthService:
    config = current_app.config
    return AuthService(
        token_service=current_app.extensions["token_service"],
        notifier=get_notification_sender(),
        lockout=LockoutPolicy(
            max_attempts=config["LOGIN_MAX_ATTEMPTS"],
            lock_duration=timedelta(seconds=config["LOGIN_LOCK_SECONDS"]),
        ),
        otp=OtpPolicy(
            length=config["OTP_LENGTH"],
            ttl=timedelta(seconds=config["OTP_TTL_SECONDS"]),
            max_attempts=config["OTP_MAX_ATTEMPTS"],
        ),
        password_hash_method=config["PASSWORD_HASH_METHOD"],
        verification_ttl=timedelta(seconds=config["VERIFICATION_TOKEN_TTL_SECONDS"]),
        reset_ttl=timedelta(seconds=config["RESET_TOKEN_TTL_SECONDS"]),
        client_url=config["CLIENT_URL"],
    )
