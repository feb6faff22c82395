from datetime import timedelta

import pytest

from taskmanager import create_app
from taskmanager.auth.tokens import TokenKind, TokenKindConfig, TokenService
from taskmanager.db import get_session

FAST_HASH = "pbkdf2:sha256:1000"


@pytest.fixture
def app(tmp_path):
    config = {
        "DATABASE_URL": f"sqlite:///{tmp_path / 'test.db'}",
        "AUTO_CREATE_DB": True,
        "EMAIL_BACKEND": "memory",
        "REVOCATION_SWEEPER_ENABLED": False,
        "PASSWORD_HASH_METHOD": FAST_HASH,
        "JWT_ACCESS_SECRET": "test-access",
        "JWT_REFRESH_SECRET": "test-refresh",
        "JWT_VERIFICATION_SECRET": "test-verification",
        "JWT_RESET_SECRET": "test-reset",
        "CLIENT_URL": "http://client.test",
    }
    app = create_app(config)
    yield app
    app.extensions["revocation_sweeper"].stop()
    app.extensions["db_engine"].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    with app.app_context():
        session = get_session()
        try:
            yield session
        finally:
            session.close()


def make_token_service(**ttl_overrides) -> TokenService:
    kinds = {}
    for kind in TokenKind:
        ttl = ttl_overrides.get(kind.value, timedelta(minutes=15))
        kinds[kind] = TokenKindConfig(secret=f"{kind.value}-secret", ttl=ttl)
    return TokenService(kinds, issuer="task-manager-api", audience="task-manager-client")


@pytest.fixture
def token_service():
    return make_token_service()
