from __future__ import annotations

import re

from flask import Blueprint, current_app, g, request

from .bearer import extract_bearer_token, require_auth
from .errors import AuthenticationRequired, ValidationFailed
from .services import get_auth_service


auth_bp = Blueprint("auth", __name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _get_payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _normalize_email(email) -> str:
    return str(email or "").strip().lower()


def _require_email(data: dict) -> str:
    email = _normalize_email(data.get("email"))
    if not EMAIL_RE.match(email):
        raise ValidationFailed("please provide a valid email", field="email")
    return email


def _require_password(data: dict, field: str = "password") -> str:
    password = data.get(field) or ""
    min_len = current_app.config["MIN_PASSWORD_LENGTH"]
    if not isinstance(password, str) or len(password) < min_len:
        raise ValidationFailed(f"password must be at least {min_len} characters", field=field)
    return password


def _require_field(data: dict, field: str, message: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed(message, field=field)
    return value.strip()


def _require_secret(data: dict, field: str, message: str) -> str:
    # Passwords are compared verbatim, so no stripping.
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise ValidationFailed(message, field=field)
    return value


@auth_bp.post("/register")
def register():
    data = _get_payload()
    name = str(data.get("name") or "").strip()
    max_len = current_app.config["NAME_MAX_LENGTH"]
    if not 2 <= len(name) <= max_len:
        raise ValidationFailed(f"name must be between 2 and {max_len} characters", field="name")
    email = _require_email(data)
    password = _require_password(data)

    result = get_auth_service().register(name, email, password)
    return {
        "ok": True,
        "message": "registered, please check your email to verify your account",
        **result,
    }, 201


@auth_bp.post("/login")
def login():
    data = _get_payload()
    email = _require_email(data)
    password = _require_secret(data, "password", "password is required")

    result = get_auth_service().login(email, password)
    return {"ok": True, **result}


@auth_bp.post("/refresh-token")
def refresh_token():
    data = _get_payload()
    token = data.get("refreshToken")
    if not token:
        raise AuthenticationRequired("refresh token is required")

    return {"ok": True, **get_auth_service().refresh(token)}


@auth_bp.post("/logout")
def logout():
    token = extract_bearer_token()
    if token is None:
        raise AuthenticationRequired()

    get_auth_service().logout(token, _get_payload().get("refreshToken"))
    return {"ok": True, "message": "logged out"}


@auth_bp.get("/me")
@require_auth
def me():
    return {"ok": True, "user": g.account.to_public_dict()}


@auth_bp.post("/verify-email")
def verify_email():
    data = _get_payload()
    token = _require_field(data, "token", "verification token is required")

    get_auth_service().verify_email(token)
    return {"ok": True, "message": "email verified"}


@auth_bp.post("/resend-verification")
def resend_verification():
    email = _require_email(_get_payload())

    get_auth_service().resend_verification(email)
    return {"ok": True, "message": "verification email sent"}


@auth_bp.post("/forgot-password")
def forgot_password():
    email = _require_email(_get_payload())

    get_auth_service().forgot_password(email)
    return {"ok": True, "message": "if an account with that email exists, a password reset link has been sent"}


@auth_bp.post("/reset-password")
def reset_password():
    data = _get_payload()
    token = _require_field(data, "token", "reset token is required")
    password = _require_password(data)

    get_auth_service().reset_password(token, password)
    return {"ok": True, "message": "password reset"}


@auth_bp.put("/change-password")
@require_auth
def change_password():
    data = _get_payload()
    current = _require_secret(data, "currentPassword", "current password is required")
    password = _require_password(data)

    get_auth_service().change_password(g.account.id, current, password)
    return {"ok": True, "message": "password changed"}


@auth_bp.post("/send-otp")
def send_otp():
    email = _require_email(_get_payload())

    get_auth_service().send_otp(email)
    return {"ok": True, "message": "OTP sent"}


@auth_bp.post("/verify-otp")
def verify_otp():
    data = _get_payload()
    email = _require_email(data)
    code = str(data.get("otp") or "").strip()
    if not code:
        raise ValidationFailed("otp is required", field="otp")

    get_auth_service().verify_otp(email, code)
    return {"ok": True, "message": "OTP verified"}
