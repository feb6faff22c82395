from __future__ import annotations

from functools import wraps

from flask import g, request

from .errors import AuthenticationRequired
from .services import get_auth_service


def extract_bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_auth(view):
    """Reject the request with 401 unless it carries a live access token.

    On success the resolved account is available as ``g.account`` and the raw
    token as ``g.access_token``.
    """

    @wraps(view)
    def wrapper(*args, **kwargs):
        token = extract_bearer_token()
        if token is None:
            raise AuthenticationRequired()
        g.account = get_auth_service().authenticate(token)
        g.access_token = token
        return view(*args, **kwargs)

    return wrapper
