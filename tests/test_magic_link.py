from authcore import models

from .conftest import create_user


async def test_magic_link_signs_in_and_verifies_email(client, db, mailer):
    user = create_user(db, verified=False)

    requested = await client.post("/auth/magic-link", json={"email": "alice@example.com"})
    assert requested.status_code == 202
    token = mailer.last_token("alice@example.com", "/auth/magic-link")

    response = await client.post("/auth/magic-link/verify", json={"token": token})

    assert response.status_code == 200
    body = response.json()
    assert body["user"]["emailVerified"] is True
    assert response.headers["set-cookie"].startswith("session=")

    db.expire_all()
    refreshed = db.get(models.User, user.id)
    assert refreshed.email_verified_at is not None
    assert refreshed.last_login_at is not None

    me = await client.get("/account/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.json()["method"] == "magic_link"


async def test_magic_link_is_single_use(client, db, mailer):
    create_user(db)
    await client.post("/auth/magic-link", json={"email": "alice@example.com"})
    token = mailer.last_token("alice@example.com", "/auth/magic-link")

    first = await client.post("/auth/magic-link/verify", json={"token": token})
    second = await client.post("/auth/magic-link/verify", json={"token": token})

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "invalid_or_expired_token"


async def test_magic_link_request_is_enumeration_safe(client, db, mailer):
    create_user(db)

    known = await client.post("/auth/magic-link", json={"email": "alice@example.com"})
    unknown = await client.post("/auth/magic-link", json={"email": "ghost@example.com"})

    assert known.status_code == unknown.status_code == 202
    assert known.json() == unknown.json()
    assert mailer.to("ghost@example.com") == []


async def test_magic_link_token_cannot_reset_password(client, db, mailer):
    create_user(db)
    await client.post("/auth/magic-link", json={"email": "alice@example.com"})
    token = mailer.last_token("alice@example.com", "/auth/magic-link")

    response = await client.post("/auth/validate-reset-token", json={"token": token})
    assert response.status_code == 400
