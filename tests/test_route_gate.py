import uuid
from datetime import UTC, datetime, timedelta

import pytest

from authcore.auth import AuthMethod, SessionClaims
from authcore.route_gate import GateAction, decide

from .conftest import create_user, login


def _claims(role: str) -> SessionClaims:
    now = datetime.now(UTC)
    return SessionClaims(
        subject=uuid.uuid4(),
        role=role,
        method=AuthMethod.PASSWORD,
        issued_at=now,
        expires_at=now + timedelta(hours=1),
        session_id="sid",
    )


CUSTOMER = _claims("customer")
ADMIN = _claims("admin")


@pytest.mark.parametrize(
    "path, claims, expected",
    [
        ("/admin", None, "/login?next=%2Fadmin"),
        ("/admin/orders", None, "/login?next=%2Fadmin%2Forders"),
        ("/admin/orders", CUSTOMER, "/unauthorized"),
        ("/admin/orders", ADMIN, None),
        ("/account", None, "/login?next=%2Faccount"),
        ("/account/orders", CUSTOMER, None),
        ("/account/orders", ADMIN, None),
        ("/login", None, None),
        ("/login", CUSTOMER, "/account"),
        ("/login", ADMIN, "/admin"),
        ("/register", CUSTOMER, "/account"),
        ("/register/", ADMIN, "/admin"),
        ("/products", None, None),
        ("/", CUSTOMER, None),
        ("/administrator", None, None),
        ("/accounting", None, None),
    ],
)
def test_gate_decision_table(path, claims, expected):
    decision = decide(path, claims)

    if expected is None:
        assert decision.action is GateAction.ALLOW
        assert decision.allowed
    else:
        assert decision.action is GateAction.REDIRECT
        assert decision.location == expected


def test_login_redirect_keeps_query_string():
    decision = decide("/account/orders", None, query="page=2")
    assert decision.location == "/login?next=%2Faccount%2Forders%3Fpage%3D2"


async def test_middleware_redirects_customer_away_from_admin(client, db):
    create_user(db)
    token = await login(client)

    response = await client.get("/admin/dashboard", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 307
    assert response.headers["location"] == "/unauthorized"
    assert response.headers["Cache-Control"] == "no-store"


async def test_middleware_sends_signed_in_user_away_from_login(client, db):
    create_user(db, "boss@example.com", role="admin")
    token = await login(client, "boss@example.com")

    response = await client.get("/login", headers={"Cookie": f"session={token}"})

    assert response.status_code == 307
    assert response.headers["location"] == "/admin"


async def test_middleware_passes_public_paths_through(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
