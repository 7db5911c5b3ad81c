import pytest

from authcore.config import Settings
from authcore.database import make_engine

from .conftest import make_settings


@pytest.fixture
def base_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://auth:secret@db:5432/auth")
    monkeypatch.setenv("JWT_SECRET", "x" * 40)
    monkeypatch.setenv("TOKEN_PEPPER", "pepper")
    monkeypatch.setenv("APP_ENV", "production")
    for name in ("REDIS_URL", "RATE_LIMIT_BACKEND", "RATE_LIMIT_AUTH_LIMIT", "SECRET_KEY"):
        monkeypatch.delenv(name, raising=False)


def test_from_env_reads_defaults(base_env):
    settings = Settings.from_env()

    assert settings.is_production
    assert settings.rate_limit_backend == "memory"
    assert settings.rate_limits["auth"].limit == 5
    assert settings.rate_limits["auth"].period == 900
    assert settings.rate_limit_fail_open is True


def test_rate_limit_overrides(base_env, monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("RATE_LIMIT_AUTH_LIMIT", "20")

    settings = Settings.from_env()

    assert settings.rate_limit_backend == "redis"
    assert settings.rate_limits["auth"].limit == 20


@pytest.mark.parametrize("missing", ["DATABASE_URL", "JWT_SECRET", "TOKEN_PEPPER"])
def test_missing_secrets_fail_fast(base_env, monkeypatch, missing):
    monkeypatch.delenv(missing)
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_short_jwt_secret_rejected_in_production(base_env, monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "short")
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_sqlite_only_outside_production():
    with pytest.raises(RuntimeError):
        make_engine(make_settings(app_env="production"))
    engine = make_engine(make_settings())
    assert engine.url.get_backend_name() == "sqlite"
    engine.dispose()
