"""Session issuing, verification and the endpoints that rely on it."""

import uuid
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import httpx
from httpx import ASGITransport
from jose import jwt

from authcore.auth import AuthMethod, SessionIssuer
from authcore.config import JWT_ALGORITHM

from .conftest import TEST_PASSWORD, RecordingMailer, build_app, create_user, login, make_settings

SECRET = "s" * 40


def _principal(role: str = "customer"):
    return SimpleNamespace(id=uuid.uuid4(), role=role)


def test_issue_and_verify_round_trip():
    issuer = SessionIssuer(SECRET, ttl=3600, kid="k1")
    user = _principal("admin")

    session = issuer.issue(user, method=AuthMethod.PASSWORD)
    claims = issuer.verify(session.token)

    assert claims is not None
    assert claims.subject == user.id
    assert claims.is_admin
    assert claims.method is AuthMethod.PASSWORD
    assert claims.expires_at == session.expires_at
    assert jwt.get_unverified_header(session.token)["kid"] == "k1"


def test_expired_session_is_rejected():
    issuer = SessionIssuer(SECRET, ttl=60, leeway=5)
    session = issuer.issue(
        _principal(), method=AuthMethod.PASSWORD, now=datetime.now(UTC) - timedelta(minutes=5)
    )
    assert issuer.verify(session.token) is None


def test_leeway_accepts_recently_expired_session():
    issuer = SessionIssuer(SECRET, ttl=60, leeway=120)
    session = issuer.issue(
        _principal(), method=AuthMethod.PASSWORD, now=datetime.now(UTC) - timedelta(seconds=90)
    )
    assert issuer.verify(session.token) is not None


def test_tampered_or_foreign_tokens_are_rejected():
    issuer = SessionIssuer(SECRET, ttl=60)
    session = issuer.issue(_principal(), method=AuthMethod.PASSWORD)

    assert issuer.verify(session.token + "x") is None
    assert SessionIssuer("o" * 40, ttl=60).verify(session.token) is None
    assert issuer.verify("") is None
    assert issuer.verify(None) is None


def test_token_with_unknown_role_is_rejected():
    now = int(datetime.now(UTC).timestamp())
    token = jwt.encode(
        {"sub": str(uuid.uuid4()), "role": "superuser", "iat": now, "exp": now + 60},
        SECRET,
        algorithm=JWT_ALGORITHM,
    )
    assert SessionIssuer(SECRET, ttl=60).verify(token) is None


async def test_account_me_accepts_bearer_and_cookie(client, db):
    user = create_user(db)
    token = await login(client)

    by_header = await client.get("/account/me", headers={"Authorization": f"Bearer {token}"})
    by_cookie = await client.get("/account/me", headers={"Cookie": f"session={token}"})

    for response in (by_header, by_cookie):
        assert response.status_code == 200
        body = response.json()
        assert body["user"]["id"] == str(user.id)
        assert body["user"]["email"] == "alice@example.com"
        assert body["method"] == "password"
        assert "expiresAt" in body
        assert response.headers["Cache-Control"] == "no-store"


async def test_account_me_redirects_anonymous_callers_to_login(client):
    response = await client.get("/account/me")

    assert response.status_code == 307
    assert response.headers["location"] == "/login?next=%2Faccount%2Fme"


async def test_change_password_requires_session(client):
    response = await client.post(
        "/auth/change-password",
        json={
            "currentPassword": TEST_PASSWORD,
            "newPassword": "N3wPassword!",
            "confirmPassword": "N3wPassword!",
        },
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "not_authenticated"


async def test_change_password_checks_current_password(client, db):
    create_user(db)
    token = await login(client)

    response = await client.post(
        "/auth/change-password",
        json={
            "currentPassword": "Wr0ngPassword",
            "newPassword": "N3wPassword!",
            "confirmPassword": "N3wPassword!",
        },
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_credentials"
    assert "currentPassword" in response.json()["error"]["fields"]


async def test_change_password_updates_credentials(client, db, mailer):
    create_user(db)
    token = await login(client)

    response = await client.post(
        "/auth/change-password",
        json={
            "currentPassword": TEST_PASSWORD,
            "newPassword": "N3wPassword!",
            "confirmPassword": "N3wPassword!",
        },
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    await login(client, password="N3wPassword!")
    failed = await client.post(
        "/auth/login", json={"email": "alice@example.com", "password": TEST_PASSWORD}
    )
    assert failed.status_code == 401
    assert any(m.subject.startswith("Password Changed") for m in mailer.to("alice@example.com"))


async def test_logout_clears_cookie(client):
    response = await client.post("/auth/logout")

    assert response.status_code == 200
    cookie = response.headers["set-cookie"]
    assert cookie.startswith('session=""') or cookie.startswith("session=;")
    assert "Max-Age=0" in cookie


async def test_unverified_login_rejected_when_verification_required():
    app = build_app(make_settings(require_verified_email=True), RecordingMailer())
    session = app.state.session_factory()
    try:
        create_user(session)
    finally:
        session.close()

    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/auth/login", json={"email": "alice@example.com", "password": TEST_PASSWORD}
        )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "email_not_verified"
    app.state.engine.dispose()
