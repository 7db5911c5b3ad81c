"""Registration and credential login over HTTP."""

from authcore import models

from .conftest import TEST_PASSWORD, create_user

REGISTER_PAYLOAD = {
    "email": "new.customer@example.com",
    "password": TEST_PASSWORD,
    "firstName": "New",
    "lastName": "Customer",
    "companyName": "Acme Corp",
}


async def test_register_creates_account_and_sends_verification(client, db, mailer):
    response = await client.post("/auth/register", json=REGISTER_PAYLOAD)

    assert response.status_code == 202
    assert response.json()["success"] is True
    assert response.headers["Cache-Control"] == "no-store"

    user = db.query(models.User).filter_by(email="new.customer@example.com").one()
    assert user.email_verified_at is None
    assert user.company_name == "Acme Corp"
    assert user.role == "customer"
    assert user.password_hash != TEST_PASSWORD

    subjects = [message.subject for message in mailer.to("new.customer@example.com")]
    assert any(subject.startswith("Verify Your Email") for subject in subjects)
    assert any(subject.startswith("Welcome") for subject in subjects)
    assert mailer.last_token("new.customer@example.com", "/verify-email")


async def test_register_response_is_identical_for_existing_email(client, db, mailer):
    create_user(db, "taken@example.com", verified=True)

    fresh = await client.post(
        "/auth/register", json={**REGISTER_PAYLOAD, "email": "fresh@example.com"}
    )
    taken = await client.post(
        "/auth/register", json={**REGISTER_PAYLOAD, "email": "taken@example.com"}
    )

    assert fresh.status_code == taken.status_code == 202
    assert fresh.json() == taken.json()
    assert db.query(models.User).filter_by(email="taken@example.com").count() == 1
    notices = mailer.to("taken@example.com")
    assert len(notices) == 1
    assert "already have" in notices[0].subject


async def test_register_normalises_email(client, db):
    response = await client.post(
        "/auth/register", json={**REGISTER_PAYLOAD, "email": "Mixed.Case@Example.COM"}
    )
    assert response.status_code == 202
    assert db.query(models.User).filter_by(email="mixed.case@example.com").count() == 1


async def test_register_rejects_weak_password_with_field_errors(client, db):
    response = await client.post(
        "/auth/register", json={**REGISTER_PAYLOAD, "password": "weak"}
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "weak_password"
    assert "Password must be at least 8 characters long" in error["fields"]["password"]
    assert db.query(models.User).count() == 0


async def test_register_requires_a_name(client):
    payload = {"email": "noname@example.com", "password": TEST_PASSWORD}
    response = await client.post("/auth/register", json=payload)

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "validation_error"
    assert "firstName" in body["error"]["fields"]


async def test_register_rejects_malformed_email(client):
    response = await client.post(
        "/auth/register", json={**REGISTER_PAYLOAD, "email": "not-an-email"}
    )
    assert response.status_code == 422
    assert "email" in response.json()["error"]["fields"]


async def test_login_returns_session_and_cookie(client, db):
    user = create_user(db, verified=True)

    response = await client.post(
        "/auth/login", json={"email": "ALICE@example.com", "password": TEST_PASSWORD}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["token"]
    assert body["user"]["id"] == str(user.id)
    assert body["user"]["emailVerified"] is True
    assert "expiresAt" in body
    cookie = response.headers["set-cookie"]
    assert cookie.startswith("session=")
    assert "HttpOnly" in cookie
    assert "samesite=lax" in cookie.lower()

    db.expire_all()
    assert db.get(models.User, user.id).last_login_at is not None


async def test_login_failure_is_identical_for_unknown_email_and_wrong_password(client, db):
    create_user(db)

    wrong_password = await client.post(
        "/auth/login", json={"email": "alice@example.com", "password": "Wr0ngPassword"}
    )
    unknown = await client.post(
        "/auth/login", json={"email": "nobody@example.com", "password": "Wr0ngPassword"}
    )

    assert wrong_password.status_code == unknown.status_code == 401
    assert wrong_password.json() == unknown.json()
    assert wrong_password.json()["error"]["code"] == "invalid_credentials"


async def test_login_allows_unverified_email_by_default(client, db):
    create_user(db, verified=False)
    response = await client.post(
        "/auth/login", json={"email": "alice@example.com", "password": TEST_PASSWORD}
    )
    assert response.status_code == 200
    assert response.json()["user"]["emailVerified"] is False
