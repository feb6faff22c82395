import threading

from sqlalchemy import select

from taskmanager.auth.tokens import TokenKind
from taskmanager.models import Account


def register(client, name="Alice", email="alice@x.com", password="secret1"):
    return client.post("/auth/register", json={"name": name, "email": email, "password": password})


def login(client, email="alice@x.com", password="secret1"):
    return client.post("/auth/login", json={"email": email, "password": password})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def last_mail(app, template):
    mails = [m for m in app.extensions["email_outbox"] if m["template"] == template]
    assert mails, f"no {template} notification sent"
    return mails[-1]


def link_token(url):
    return url.split("token=", 1)[1]


def test_register_login_refresh_scenario(client, app):
    response = register(client)
    assert response.status_code == 201
    body = response.get_json()
    account_id = body["user"]["id"]
    assert body["user"]["email"] == "alice@x.com"
    assert body["user"]["isVerified"] is False
    assert "passwordHash" not in body["user"] and "password_hash" not in body["user"]
    assert body["accessToken"] and body["refreshToken"]

    response = login(client)
    assert response.status_code == 200
    refresh_token = response.get_json()["refreshToken"]

    response = client.post("/auth/refresh-token", json={"refreshToken": refresh_token})
    assert response.status_code == 200
    new_access = response.get_json()["accessToken"]

    verified = app.extensions["token_service"].verify(new_access, "access")
    assert verified.account_id == account_id


def test_register_duplicate_email(client):
    assert register(client).status_code == 201
    response = register(client, name="Alice Two", email="ALICE@x.com")
    assert response.status_code == 400
    assert response.get_json()["code"] == "duplicate_email"


def test_register_validation(client):
    assert register(client, name="A").status_code == 400
    assert register(client, email="not-an-email").status_code == 400
    response = register(client, password="123")
    assert response.status_code == 400
    assert response.get_json()["code"] == "validation_error"


def test_login_unknown_email_and_wrong_password_look_alike(client):
    register(client)
    unknown = login(client, email="bob@x.com")
    wrong = login(client, password="wrong-password")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.get_json() == wrong.get_json()


def test_login_rejects_non_string_password(client):
    register(client)
    for password in (123456, ["secret1"], {"value": "secret1"}):
        response = client.post("/auth/login", json={"email": "alice@x.com", "password": password})
        assert response.status_code == 400
        assert response.get_json()["code"] == "validation_error"
        assert response.get_json()["field"] == "password"


def test_lockout_after_five_failures(client, db_session):
    register(client)

    for _ in range(4):
        assert login(client, password="wrong-password").status_code == 401
    assert login(client, password="wrong-password").status_code == 401

    response = login(client)
    assert response.status_code == 423
    assert response.get_json()["code"] == "account_locked"

    account = db_session.execute(select(Account).where(Account.email == "alice@x.com")).scalar_one()
    assert account.login_attempts == 5
    assert account.lock_until is not None

    # Attempts while locked do not move the counter.
    assert login(client, password="wrong-password").status_code == 423
    db_session.expire_all()
    account = db_session.execute(select(Account).where(Account.email == "alice@x.com")).scalar_one()
    assert account.login_attempts == 5


def test_successful_login_resets_attempts(client, db_session):
    register(client)
    for _ in range(3):
        login(client, password="wrong-password")

    body = login(client).get_json()
    assert body["user"]["lastLogin"] is not None

    account = db_session.execute(select(Account).where(Account.email == "alice@x.com")).scalar_one()
    assert account.login_attempts == 0
    assert account.lock_until is None


def test_refresh_rotation_spends_old_token(client):
    refresh_token = register(client).get_json()["refreshToken"]

    first = client.post("/auth/refresh-token", json={"refreshToken": refresh_token})
    assert first.status_code == 200

    replay = client.post("/auth/refresh-token", json={"refreshToken": refresh_token})
    assert replay.status_code == 401
    assert replay.get_json()["code"] == "token_revoked"

    rotated = first.get_json()["refreshToken"]
    assert client.post("/auth/refresh-token", json={"refreshToken": rotated}).status_code == 200


def test_refresh_rejects_access_token(client):
    access = register(client).get_json()["accessToken"]
    response = client.post("/auth/refresh-token", json={"refreshToken": access})
    assert response.status_code == 401
    assert response.get_json()["code"] == "token_kind_mismatch"


def test_refresh_requires_token(client):
    assert client.post("/auth/refresh-token", json={}).status_code == 401


def test_concurrent_refresh_spends_token_once(app, monkeypatch):
    refresh_token = register(app.test_client()).get_json()["refreshToken"]
    service = app.extensions["token_service"]
    original_verify = service.verify
    barrier = threading.Barrier(2, timeout=5)

    # Both requests pass verification before either rotates the token.
    def verify_then_wait(token, kind, **kwargs):
        verified = original_verify(token, kind, **kwargs)
        if TokenKind(kind) is TokenKind.REFRESH:
            barrier.wait()
        return verified

    monkeypatch.setattr(service, "verify", verify_then_wait)
    responses = []

    def attempt():
        response = app.test_client().post("/auth/refresh-token", json={"refreshToken": refresh_token})
        responses.append((response.status_code, response.get_json()))

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    statuses = sorted(status for status, _ in responses)
    assert statuses == [200, 401]
    rejected = next(body for status, body in responses if status == 401)
    assert rejected["code"] == "token_revoked"


def test_logout_revokes_access_and_refresh(client):
    tokens = register(client).get_json()
    access, refresh = tokens["accessToken"], tokens["refreshToken"]

    assert client.get("/auth/me", headers=bearer(access)).status_code == 200

    response = client.post("/auth/logout", json={"refreshToken": refresh}, headers=bearer(access))
    assert response.status_code == 200

    me = client.get("/auth/me", headers=bearer(access))
    assert me.status_code == 401
    assert me.get_json()["code"] == "token_revoked"
    assert client.post("/auth/refresh-token", json={"refreshToken": refresh}).status_code == 401

    # Logging out again is a no-op.
    assert client.post("/auth/logout", headers=bearer(access)).status_code == 200


def test_retried_logout_still_revokes_refresh_token(client):
    tokens = register(client).get_json()
    access, refresh = tokens["accessToken"], tokens["refreshToken"]

    assert client.post("/auth/logout", headers=bearer(access)).status_code == 200
    response = client.post("/auth/logout", json={"refreshToken": refresh}, headers=bearer(access))
    assert response.status_code == 200

    response = client.post("/auth/refresh-token", json={"refreshToken": refresh})
    assert response.status_code == 401
    assert response.get_json()["code"] == "token_revoked"


def test_logout_ignores_refresh_token_of_another_account(client):
    alice = register(client).get_json()
    bob = register(client, name="Bob", email="bob@x.com").get_json()

    response = client.post(
        "/auth/logout", json={"refreshToken": bob["refreshToken"]}, headers=bearer(alice["accessToken"])
    )
    assert response.status_code == 200
    assert client.post("/auth/refresh-token", json={"refreshToken": bob["refreshToken"]}).status_code == 200


def test_logout_ignores_non_refresh_token_in_body(client):
    tokens = register(client).get_json()
    other_access = login(client).get_json()["accessToken"]

    response = client.post("/auth/logout", json={"refreshToken": other_access}, headers=bearer(tokens["accessToken"]))
    assert response.status_code == 200
    assert client.get("/auth/me", headers=bearer(other_access)).status_code == 200

    response = client.post("/auth/logout", json={"refreshToken": 12345}, headers=bearer(other_access))
    assert response.status_code == 200


def test_logout_rejects_garbage_bearer(client):
    response = client.post("/auth/logout", headers=bearer("garbage"))
    assert response.status_code == 401
    assert response.get_json()["code"] == "token_malformed"


def test_bearer_required(client):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Basic abc"}).status_code == 401
    response = client.get("/auth/me", headers=bearer("garbage"))
    assert response.status_code == 401
    assert response.get_json()["code"] == "token_malformed"


def test_bearer_for_deleted_account(client, db_session):
    access = register(client).get_json()["accessToken"]
    account = db_session.execute(select(Account).where(Account.email == "alice@x.com")).scalar_one()
    db_session.delete(account)
    db_session.commit()

    response = client.get("/auth/me", headers=bearer(access))
    assert response.status_code == 401
    assert response.get_json()["code"] == "account_not_found"


def test_verify_email_flow(client, app):
    register(client)
    token = link_token(last_mail(app, "emailVerification")["data"]["verificationUrl"])

    assert client.post("/auth/verify-email", json={"token": token}).status_code == 200
    assert login(client).get_json()["user"]["isVerified"] is True

    # Token is single use.
    response = client.post("/auth/verify-email", json={"token": token})
    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_or_expired_token"


def test_resend_verification(client, app):
    register(client)
    first = link_token(last_mail(app, "emailVerification")["data"]["verificationUrl"])

    assert client.post("/auth/resend-verification", json={"email": "alice@x.com"}).status_code == 200
    second = link_token(last_mail(app, "emailVerification")["data"]["verificationUrl"])
    assert first != second

    assert client.post("/auth/verify-email", json={"token": first}).status_code == 400
    assert client.post("/auth/verify-email", json={"token": second}).status_code == 200

    response = client.post("/auth/resend-verification", json={"email": "alice@x.com"})
    assert response.get_json()["code"] == "already_verified"
    assert client.post("/auth/resend-verification", json={"email": "bob@x.com"}).status_code == 404


def test_forgot_and_reset_password(client, app):
    register(client)

    response = client.post("/auth/forgot-password", json={"email": "alice@x.com"})
    assert response.status_code == 200
    token = link_token(last_mail(app, "passwordReset")["data"]["resetUrl"])

    response = client.post("/auth/reset-password", json={"token": token, "password": "newsecret"})
    assert response.status_code == 200

    assert login(client).status_code == 401
    assert login(client, password="newsecret").status_code == 200
    assert client.post("/auth/reset-password", json={"token": token, "password": "another1"}).status_code == 400


def test_forgot_password_does_not_enumerate(client, app):
    register(client)
    known = client.post("/auth/forgot-password", json={"email": "alice@x.com"})
    unknown = client.post("/auth/forgot-password", json={"email": "nobody@x.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.get_json() == unknown.get_json()
    assert all(m["to"] != "nobody@x.com" for m in app.extensions["email_outbox"])


def test_change_password(client):
    access = register(client).get_json()["accessToken"]

    response = client.put(
        "/auth/change-password",
        json={"currentPassword": "wrong", "password": "newsecret"},
        headers=bearer(access),
    )
    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_credentials"

    response = client.put(
        "/auth/change-password",
        json={"currentPassword": "secret1", "password": "newsecret"},
        headers=bearer(access),
    )
    assert response.status_code == 200
    assert login(client, password="newsecret").status_code == 200


def test_change_password_rejects_non_string_current_password(client):
    access = register(client).get_json()["accessToken"]
    response = client.put(
        "/auth/change-password",
        json={"currentPassword": 123456, "password": "newsecret"},
        headers=bearer(access),
    )
    assert response.status_code == 400
    assert response.get_json()["field"] == "currentPassword"


def test_change_password_requires_bearer(client):
    response = client.put("/auth/change-password", json={"currentPassword": "secret1", "password": "newsecret"})
    assert response.status_code == 401


def test_otp_flow(client, app):
    register(client)
    assert client.post("/auth/send-otp", json={"email": "alice@x.com"}).status_code == 200
    code = last_mail(app, "otpCode")["data"]["otp"]
    bad = "000000" if code != "000000" else "111111"

    for _ in range(3):
        response = client.post("/auth/verify-otp", json={"email": "alice@x.com", "otp": bad})
        assert response.status_code == 400
        assert response.get_json()["code"] == "otp_invalid"

    response = client.post("/auth/verify-otp", json={"email": "alice@x.com", "otp": code})
    assert response.get_json()["code"] == "otp_attempts_exceeded"

    client.post("/auth/send-otp", json={"email": "alice@x.com"})
    code = last_mail(app, "otpCode")["data"]["otp"]
    assert client.post("/auth/verify-otp", json={"email": "alice@x.com", "otp": code}).status_code == 200

    response = client.post("/auth/verify-otp", json={"email": "alice@x.com", "otp": code})
    assert response.get_json()["code"] == "no_otp_pending"


def test_otp_unknown_account(client):
    assert client.post("/auth/send-otp", json={"email": "nobody@x.com"}).status_code == 404


def test_health(client):
    assert client.get("/health").get_json() == {"ok": True}
