import os
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport
from tenacity import wait_none

# Required secrets are read lazily by ``get_settings``; keep the environment
# deterministic for anything that falls back to it.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault(
    "JWT_SECRET",
    "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef",
)
os.environ.setdefault("TOKEN_PEPPER", "unit-test-pepper")
os.environ.setdefault("LOG_JSON", "true")
os.environ.setdefault("ACCESS_LOG_SAMPLE", "1.0")

from authcore import models  # noqa: E402
from authcore.config import DEFAULT_RATE_LIMITS, RateLimitPolicy, Settings  # noqa: E402
from authcore.credentials import hash_password  # noqa: E402
from authcore.main import create_app  # noqa: E402
from authcore.rate_limit import MemorySlidingWindowStore, RateLimiter  # noqa: E402

TEST_PASSWORD = "Sup3rSecret!"
TOKEN_RE = re.compile(r"token=([0-9a-f]{64})")


@dataclass
class SentEmail:
    to: str
    subject: str
    body: str


class RecordingMailer:
    """Mailer double that keeps every message it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []

    def send(self, to: str, subject: str, body: str) -> bool:
        self.sent.append(SentEmail(to, subject, body))
        return True

    def to(self, address: str) -> list[SentEmail]:
        return [message for message in self.sent if message.to == address]

    def last_token(self, address: str, path: str) -> str:
        """Return the token from the newest email to ``address`` linking to ``path``."""

        for message in reversed(self.to(address)):
            if f"{path}?token=" in message.body:
                match = TOKEN_RE.search(message.body)
                if match:
                    return match.group(1)
        raise AssertionError(f"no {path} email sent to {address}")


def make_settings(**overrides) -> Settings:
    generous = {name: RateLimitPolicy(1000, period) for name, (_, period) in DEFAULT_RATE_LIMITS.items()}
    base = Settings(
        database_url="sqlite:///:memory:",
        jwt_secret=os.environ["JWT_SECRET"],
        token_pepper="unit-test-pepper",
        app_env="test",
        app_base_url="http://frontend.test",
        app_name="Storefront",
        cookie_secure=False,
        bcrypt_rounds=4,
        email_verification_resend_cooldown=60,
        rate_limit_backend="memory",
        rate_limits=generous,
    )
    return replace(base, **overrides)


def build_app(settings: Settings, mailer: RecordingMailer, rate_limiter: RateLimiter | None = None):
    app = create_app(
        settings,
        mailer=mailer,
        rate_limiter=rate_limiter
        or RateLimiter(MemorySlidingWindowStore(), settings.rate_limits),
    )
    app.state.mail_retry_wait = wait_none()
    models.Base.metadata.create_all(app.state.engine)
    return app


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def app(settings, mailer):
    application = build_app(settings, mailer)
    yield application
    application.state.engine.dispose()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def create_user(
    db,
    email: str = "alice@example.com",
    *,
    password: str = TEST_PASSWORD,
    verified: bool = False,
    role: str = models.UserRole.CUSTOMER.value,
    first_name: str = "Alice",
) -> models.User:
    now = datetime.now(UTC)
    user = models.User(
        email=models.normalize_email(email),
        password_hash=hash_password(password),
        first_name=first_name,
        role=role,
        email_verified_at=now if verified else None,
        created_at=now,
    )
    db.add(user)
    db.commit()
    return user


async def login(client, email: str = "alice@example.com", password: str = TEST_PASSWORD):
    response = await client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]
