"""Expected, user-facing outcomes of the authentication flows.

Each error carries the HTTP status it maps to and a stable machine-readable
code. Messages are what the end user sees, so some of them deliberately
collapse distinctions (unknown email vs. wrong password).
"""

from __future__ import annotations


class AuthError(Exception):
    status_code: int = 400
    error_code: str = "auth_error"
    default_message: str = "authentication error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None, **extras) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.extras = extras
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.message, "code": self.error_code}
        payload.update(self.extras)
        return payload


class ValidationFailed(AuthError):
    error_code = "validation_error"
    default_message = "invalid request"


class AuthenticationRequired(AuthError):
    status_code = 401
    error_code = "authentication_required"
    default_message = "access token is required"


class DuplicateEmail(AuthError):
    error_code = "duplicate_email"
    default_message = "an account with this email already exists"


class InvalidCredentials(AuthError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "invalid credentials"


class AccountLocked(AuthError):
    status_code = 423
    error_code = "account_locked"
    default_message = "account is temporarily locked due to too many failed login attempts"


class AccountNotFound(AuthError):
    status_code = 404
    error_code = "account_not_found"
    default_message = "account not found"


class AlreadyVerified(AuthError):
    error_code = "already_verified"
    default_message = "email is already verified"


class InvalidOrExpiredToken(AuthError):
    error_code = "invalid_or_expired_token"
    default_message = "invalid or expired token"


class TokenError(AuthError):
    status_code = 401
    error_code = "token_invalid"
    default_message = "invalid token"


class TokenExpired(TokenError):
    error_code = "token_expired"
    default_message = "token has expired"


class TokenMalformed(TokenError):
    error_code = "token_malformed"
    default_message = "invalid token"


class TokenKindMismatch(TokenError):
    error_code = "token_kind_mismatch"
    default_message = "invalid token"


class TokenRevoked(TokenError):
    error_code = "token_revoked"
    default_message = "token has been invalidated"


class OtpError(AuthError):
    error_code = "otp_error"


class NoOtpPending(OtpError):
    error_code = "no_otp_pending"
    default_message = "no OTP found"


class OtpExpired(OtpError):
    error_code = "otp_expired"
    default_message = "OTP has expired"


class OtpAttemptsExceeded(OtpError):
    error_code = "otp_attempts_exceeded"
    default_message = "too many OTP attempts"


class OtpInvalid(OtpError):
    error_code = "otp_invalid"
    default_message = "invalid OTP"
